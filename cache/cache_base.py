#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Cache entry type and the two storage backends behind CacheStore.

- DiskCacheBackend: JSON file shared by every process on the host
  (inter-process fcntl lock, merge on write, atomic tmp+rename).
- MemoryCacheBackend: in-process dict with the same interface; used as the
  fallback when the disk backend is unavailable.

Backends store plain dicts (CacheEntry.to_dict()); TTL policy lives in CacheStore.
"""

from __future__ import annotations

import fnmatch
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - best-effort on non-POSIX
    fcntl = None  # type: ignore


@dataclass(frozen=True)
class CacheEntry:
    """One cached payload plus its freshness metadata."""

    key: str
    payload: Any
    stored_at: float
    ttl_s: int
    etag: Optional[str] = None

    @property
    def expires_at(self) -> float:
        return float(self.stored_at) + float(self.ttl_s)

    def age_s(self, now: float) -> float:
        return max(0.0, float(now) - float(self.stored_at))

    def is_fresh(self, now: float) -> bool:
        """Payload is only trusted while now - stored_at < ttl_s."""
        return (float(now) - float(self.stored_at)) < float(self.ttl_s)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "payload": self.payload,
            "ts": float(self.stored_at),
            "ttl_s": int(self.ttl_s),
        }
        if self.etag:
            d["etag"] = self.etag
        return d

    @classmethod
    def from_dict(cls, key: str, d: Dict[str, Any]) -> Optional["CacheEntry"]:
        if not isinstance(d, dict) or "payload" not in d:
            return None
        try:
            ts = float(d.get("ts", 0) or 0)
            ttl = int(d.get("ttl_s", 0) or 0)
        except (ValueError, TypeError):
            return None
        etag = d.get("etag")
        etag = etag.strip() if isinstance(etag, str) and etag.strip() else None
        return cls(key=key, payload=d["payload"], stored_at=ts, ttl_s=ttl, etag=etag)


class CacheBackend(Protocol):
    def read(self, key: str) -> Optional[Dict[str, Any]]: ...

    def write(self, key: str, value: Dict[str, Any]) -> None: ...

    def delete(self, key: str) -> bool: ...

    def delete_matching(self, pattern: str) -> List[str]: ...

    def keys(self) -> List[str]: ...


class MemoryCacheBackend:
    """Thread-safe in-process backend."""

    def __init__(self) -> None:
        self._mu = Lock()
        self._items: Dict[str, Dict[str, Any]] = {}

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        with self._mu:
            v = self._items.get(key)
            return dict(v) if isinstance(v, dict) else None

    def write(self, key: str, value: Dict[str, Any]) -> None:
        with self._mu:
            self._items[key] = dict(value)

    def delete(self, key: str) -> bool:
        with self._mu:
            return self._items.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> List[str]:
        with self._mu:
            hits = [k for k in self._items if fnmatch.fnmatchcase(k, pattern)]
            for k in hits:
                del self._items[k]
            return hits

    def keys(self) -> List[str]:
        with self._mu:
            return list(self._items)


class DiskCacheBackend:
    """Disk-backed backend with inter-process locking.

    Provides:
    - Thread-safe in-memory view with Lock
    - Disk persistence with inter-process locking (fcntl)
    - Reload when the file changed on disk (other processes share the file)
    - Merge on write (handle concurrent writers); deletes are tombstoned until persisted
    - Expired entries older than `retention_s` past their TTL are dropped on write

    IO errors (OSError) propagate so callers can switch to a fallback.
    """

    _SCHEMA_VERSION = 1

    def __init__(self, *, cache_file: Path, retention_s: Optional[float] = None):
        self._mu = Lock()
        self._cache_file = Path(cache_file)
        self._retention_s = retention_s
        self._items: Dict[str, Dict[str, Any]] = {}
        self._loaded_mtime: Optional[float] = None
        self._loaded = False

    @property
    def cache_file(self) -> Path:
        return self._cache_file

    def _lock_file_path(self) -> Path:
        """Path to lock file (next to cache file)."""
        return self._cache_file.with_name(f".{self._cache_file.name}.lock")

    def _acquire_disk_lock(self, *, timeout_s: float = 10.0) -> Optional[object]:
        """Best-effort inter-process lock for the cache file.

        Returns file handle on success, None on timeout.
        """
        if fcntl is None:
            return None

        lock_path = self._lock_file_path()
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        fh = open(lock_path, "w")
        start = time.monotonic()
        while time.monotonic() - start < float(timeout_s):
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fh
            except (IOError, OSError):
                time.sleep(0.05)
        fh.close()
        return None

    def _release_disk_lock(self, lock_fh: Optional[object]) -> None:
        """Release inter-process lock."""
        if lock_fh is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)  # type: ignore[attr-defined]
        finally:
            lock_fh.close()  # type: ignore[attr-defined]

    def _read_disk_items(self) -> Dict[str, Dict[str, Any]]:
        if not self._cache_file.exists():
            return {}
        text = self._cache_file.read_text()
        try:
            raw = json.loads(text or "{}")
        except json.JSONDecodeError:
            # Corrupt file: start over rather than failing every read.
            return {}
        items = raw.get("items") if isinstance(raw, dict) else None
        return dict(items) if isinstance(items, dict) else {}

    def _refresh_locked(self) -> None:
        """Reload from disk if another writer touched the file."""
        try:
            mtime: Optional[float] = self._cache_file.stat().st_mtime
        except FileNotFoundError:
            mtime = None
        if self._loaded and mtime == self._loaded_mtime:
            return
        self._items = self._read_disk_items()
        self._loaded_mtime = mtime
        self._loaded = True

    def _prune(self, items: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        if self._retention_s is None:
            return items
        now = time.time()
        keep: Dict[str, Dict[str, Any]] = {}
        for k, v in items.items():
            try:
                dead_at = float(v.get("ts", 0)) + float(v.get("ttl_s", 0)) + float(self._retention_s)
            except (AttributeError, ValueError, TypeError):
                continue
            if dead_at > now:
                keep[k] = v
        return keep

    def _persist_locked(self, *, upserts: Dict[str, Dict[str, Any]], deletes: List[str]) -> None:
        """Merge with disk state and write atomically (tmp file + rename)."""
        self._cache_file.parent.mkdir(parents=True, exist_ok=True)
        lock_fh = self._acquire_disk_lock(timeout_s=10.0)
        try:
            merged = self._read_disk_items()
            for k in deletes:
                merged.pop(k, None)
            merged.update(upserts)
            merged = self._prune(merged)

            tmp = f"{self._cache_file}.tmp.{os.getpid()}"
            Path(tmp).write_text(json.dumps(
                {"version": self._SCHEMA_VERSION, "items": merged},
                separators=(",", ":"),
                sort_keys=True,
            ))
            os.replace(tmp, str(self._cache_file))

            self._items = merged
            self._loaded_mtime = self._cache_file.stat().st_mtime
            self._loaded = True
        finally:
            self._release_disk_lock(lock_fh)

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        with self._mu:
            self._refresh_locked()
            v = self._items.get(key)
            return dict(v) if isinstance(v, dict) else None

    def write(self, key: str, value: Dict[str, Any]) -> None:
        with self._mu:
            self._persist_locked(upserts={key: dict(value)}, deletes=[])

    def delete(self, key: str) -> bool:
        with self._mu:
            self._refresh_locked()
            existed = key in self._items
            self._persist_locked(upserts={}, deletes=[key])
            return existed

    def delete_matching(self, pattern: str) -> List[str]:
        with self._mu:
            self._refresh_locked()
            hits = [k for k in self._items if fnmatch.fnmatchcase(k, pattern)]
            if hits:
                self._persist_locked(upserts={}, deletes=hits)
            return hits

    def keys(self) -> List[str]:
        with self._mu:
            self._refresh_locked()
            return list(self._items)
