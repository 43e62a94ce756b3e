# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""TTL + ETag key/value store used by every cached GitHub resource.

Read path:  pending writes -> shared disk backend -> in-process fallback.
Write path: in-process mirror + pending map (synchronous), then a single
            background writer persists to the shared backend.

Backend failures never reach callers: the store logs, flips to degraded mode
(in-process only) and retries the backend after `backend_retry_s`. Writes and
deletes made while degraded are queued and replayed onto the backend (pattern
deletes first, then per-key writes and tombstones) before it is read again.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Set

from common import DEFAULT_STALE_RETENTION_S

from .cache_base import CacheBackend, CacheEntry, MemoryCacheBackend

_logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (OSError, ValueError, TypeError)


class CacheStore:
    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        *,
        clock: Callable[[], float] = time.time,
        stale_retention_s: float = DEFAULT_STALE_RETENTION_S,
        backend_retry_s: float = 60.0,
        async_writes: bool = True,
    ):
        self._backend = backend
        self._clock = clock
        self._stale_retention_s = float(stale_retention_s)
        self._backend_retry_s = float(backend_retry_s)
        self._mem = MemoryCacheBackend()
        self._mu = threading.Lock()
        # key -> entry dict (or None for a pending delete) not yet persisted
        self._pending: Dict[str, Optional[Dict[str, Any]]] = {}
        self._inflight: Set[Future] = set()
        self._backend_down_until: float = 0.0
        # Replay queue for the backend: key -> entry dict (None = tombstone),
        # plus glob deletes, recorded while the backend was unreachable.
        self._replay: Dict[str, Optional[Dict[str, Any]]] = {}
        self._replay_patterns: List[str] = []
        self._writer: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-writer")
            if (backend is not None and async_writes)
            else None
        )

    # ------------------------------------------------------------------
    # backend health
    # ------------------------------------------------------------------

    @property
    def is_degraded(self) -> bool:
        return self._backend is not None and self._clock() < self._backend_down_until

    def _backend_available(self) -> bool:
        return self._backend is not None and self._clock() >= self._backend_down_until

    def _mark_backend_down(self, op: str, err: BaseException) -> None:
        if not self.is_degraded:
            _logger.warning(
                "Cache backend %s failed (%s: %s); using in-process cache for %.0fs",
                op, type(err).__name__, err, self._backend_retry_s,
            )
        self._backend_down_until = self._clock() + self._backend_retry_s

    def _queue_replay(self, key: str, value: Optional[Dict[str, Any]]) -> None:
        with self._mu:
            self._replay[key] = value

    def _queue_replay_pattern(self, pattern: str) -> None:
        with self._mu:
            for k in [k for k in self._replay if fnmatch.fnmatchcase(k, pattern)]:
                del self._replay[k]
            self._replay_patterns.append(pattern)

    def _replay_to_backend(self) -> bool:
        """Apply changes queued while degraded. Returns False if the backend failed again."""
        with self._mu:
            if not self._replay and not self._replay_patterns:
                return True
            patterns, ops = self._replay_patterns, self._replay
            self._replay_patterns, self._replay = [], {}
        try:
            for pattern in patterns:
                self._backend.delete_matching(pattern)  # type: ignore[union-attr]
            for key, value in ops.items():
                if value is None:
                    self._backend.delete(key)  # type: ignore[union-attr]
                else:
                    self._backend.write(key, value)  # type: ignore[union-attr]
        except _BACKEND_ERRORS as e:
            self._mark_backend_down("replay", e)
            with self._mu:
                newer_patterns, newer_ops = self._replay_patterns, self._replay
                merged = {
                    k: v for k, v in ops.items()
                    if not any(fnmatch.fnmatchcase(k, p) for p in newer_patterns)
                }
                merged.update(newer_ops)
                self._replay_patterns, self._replay = patterns + newer_patterns, merged
            return False
        _logger.info(
            "Cache backend recovered; replayed %d deletion pattern(s) and %d key change(s)",
            len(patterns), len(ops),
        )
        return True

    def _backend_ready(self) -> bool:
        return self._backend_available() and self._replay_to_backend()

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def _expired_beyond_retention(self, entry: CacheEntry) -> bool:
        return self._clock() >= entry.expires_at + self._stale_retention_s

    def _read_raw(self, key: str) -> Optional[Dict[str, Any]]:
        with self._mu:
            if key in self._pending:
                return self._pending[key]
        if self._backend_ready():
            try:
                return self._backend.read(key)  # type: ignore[union-attr]
            except _BACKEND_ERRORS as e:
                self._mark_backend_down("read", e)
        return self._mem.read(key)

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for `key` (possibly expired; see CacheEntry.is_fresh)."""
        raw = self._read_raw(key)
        if raw is None:
            return None
        entry = CacheEntry.from_dict(key, raw)
        if entry is None:
            _logger.debug("Dropping unreadable cache entry %s", key)
            return None
        if self._expired_beyond_retention(entry):
            return None
        return entry

    def get_etag(self, key: str) -> Optional[str]:
        entry = self.get(key)
        return entry.etag if entry is not None else None

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def _submit(self, key: Optional[str], value: Optional[Dict[str, Any]], op: Callable[[CacheBackend], Any]) -> None:
        if self._backend is None:
            return

        def _run() -> None:
            try:
                if not self._backend_ready():
                    if key is not None:
                        self._queue_replay(key, value)
                    return
                try:
                    op(self._backend)  # type: ignore[arg-type]
                except _BACKEND_ERRORS as e:
                    self._mark_backend_down("write", e)
                    if key is not None:
                        self._queue_replay(key, value)
                except Exception as e:  # writes are best-effort
                    _logger.warning("Cache write for %s failed: %s", key, e)
            finally:
                if key is not None:
                    with self._mu:
                        if key in self._pending and self._pending[key] is value:
                            del self._pending[key]

        if self._writer is None:
            _run()
            return
        fut = self._writer.submit(_run)
        with self._mu:
            self._inflight.add(fut)
        fut.add_done_callback(self._forget_future)

    def _forget_future(self, fut: Future) -> None:
        with self._mu:
            self._inflight.discard(fut)

    def set(self, key: str, payload: Any, ttl_s: int, etag: Optional[str] = None) -> CacheEntry:
        """Store `payload` for `ttl_s` seconds. Never raises on backend failure."""
        entry = CacheEntry(key=key, payload=payload, stored_at=self._clock(), ttl_s=int(ttl_s), etag=etag or None)
        value = entry.to_dict()
        self._mem.write(key, value)
        if self._backend is not None:
            with self._mu:
                self._pending[key] = value
            self._submit(key, value, lambda b: b.write(key, value))
        _logger.debug("cache set %s (ttl=%ss etag=%s)", key, ttl_s, bool(etag))
        return entry

    def touch(self, key: str, ttl_s: Optional[int] = None) -> Optional[CacheEntry]:
        """Extend an entry's expiry, keeping payload and ETag unchanged."""
        entry = self.get(key)
        if entry is None:
            return None
        return self.set(key, entry.payload, int(ttl_s if ttl_s is not None else entry.ttl_s), entry.etag)

    def delete(self, key: str) -> None:
        self._mem.delete(key)
        if self._backend is not None:
            with self._mu:
                self._pending[key] = None
            self._submit(key, None, lambda b: b.delete(key))

    def delete_matching(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (e.g. "issues:owner/repo:*").

        Runs synchronously against the backend so other processes stop seeing
        the entries as soon as this returns.
        """
        self.flush()
        removed: Set[str] = set(self._mem.delete_matching(pattern))
        if self._backend is not None:
            if self._backend_ready():
                try:
                    removed.update(self._backend.delete_matching(pattern))  # type: ignore[union-attr]
                except _BACKEND_ERRORS as e:
                    self._mark_backend_down("delete", e)
                    self._queue_replay_pattern(pattern)
            else:
                self._queue_replay_pattern(pattern)
        _logger.debug("cache delete_matching %s -> %d", pattern, len(removed))
        return len(removed)

    def delete_by_prefix(self, prefix: str) -> int:
        return self.delete_matching(f"{prefix}*")

    def keys(self) -> List[str]:
        self.flush()
        out = set(self._mem.keys())
        if self._backend_ready():
            try:
                out.update(self._backend.keys())  # type: ignore[union-attr]
            except _BACKEND_ERRORS as e:
                self._mark_backend_down("keys", e)
        return sorted(out)

    def flush(self, timeout_s: Optional[float] = 30.0) -> None:
        """Wait for queued backend writes."""
        with self._mu:
            pending = list(self._inflight)
        for fut in pending:
            try:
                fut.result(timeout=timeout_s)
            except Exception as e:
                _logger.debug("pending cache write did not finish: %s", e)

    def close(self) -> None:
        self.flush()
        if self._writer is not None:
            self._writer.shutdown(wait=True)
            self._writer = None
