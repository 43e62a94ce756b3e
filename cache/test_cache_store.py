"""
Pytest tests for cache/cache_store.py and the disk backend behind it.
"""

import logging
import time

import pytest

from cache.cache_base import DiskCacheBackend, MemoryCacheBackend
from cache.cache_store import CacheStore


class BrokenBackend:
    """Backend whose every operation fails like an unreachable shared cache."""

    def __init__(self):
        self.calls = 0

    def _fail(self, *a, **kw):
        self.calls += 1
        raise OSError("connection refused")

    read = write = delete = delete_matching = keys = _fail


class Clock:
    def __init__(self, t=1_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


def test_fresh_then_expired():
    clk = Clock()
    store = CacheStore(clock=clk)
    store.set("issues:o/r:today", {"users": []}, ttl_s=1800, etag='W/"a"')

    entry = store.get("issues:o/r:today")
    assert entry is not None and entry.is_fresh(clk())
    assert entry.etag == 'W/"a"'

    clk.t += 1800
    entry = store.get("issues:o/r:today")
    # Expired entries stay readable for revalidation.
    assert entry is not None and not entry.is_fresh(clk())


def test_entry_dropped_after_stale_retention():
    clk = Clock()
    store = CacheStore(clock=clk, stale_retention_s=60)
    store.set("k", 1, ttl_s=10)
    clk.t += 69
    assert store.get("k") is not None
    clk.t += 1
    assert store.get("k") is None


def test_touch_keeps_payload_and_etag():
    clk = Clock()
    store = CacheStore(clock=clk)
    store.set("k", {"users": [{"username": "alice"}]}, ttl_s=100, etag='W/"x"')
    before = store.get("k")

    clk.t += 150
    touched = store.touch("k", 100)
    after = store.get("k")

    assert touched is not None
    assert after.payload == before.payload
    assert after.etag == before.etag
    assert after.stored_at == clk.t
    assert after.is_fresh(clk())


def test_touch_missing_key_is_noop():
    store = CacheStore(clock=Clock())
    assert store.touch("missing", 10) is None
    assert store.get("missing") is None


def test_delete_matching_is_scoped_to_pattern():
    store = CacheStore(clock=Clock())
    store.set("issues:o/r:today", 1, 100)
    store.set("issues:o/r:this-week", 2, 100)
    store.set("issues:o/other:today", 3, 100)
    store.set("commits:o/r:today", 4, 100)

    assert store.delete_matching("issues:o/r:*") == 2
    assert store.get("issues:o/r:today") is None
    assert store.get("issues:o/other:today") is not None
    assert store.get("commits:o/r:today") is not None


def test_backend_failure_degrades_to_memory(caplog):
    clk = Clock()
    backend = BrokenBackend()
    store = CacheStore(backend, clock=clk, async_writes=False, backend_retry_s=60)

    with caplog.at_level(logging.WARNING, logger="cache.cache_store"):
        store.set("k", {"v": 1}, ttl_s=100, etag="e1")
        assert store.get("k").payload == {"v": 1}
        store.set("k2", {"v": 2}, ttl_s=100)
        assert store.get("k2").payload == {"v": 2}

    assert store.is_degraded
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    # While degraded the backend is not retried.
    calls = backend.calls
    store.get("k")
    assert backend.calls == calls

    clk.t += 61
    assert not store.is_degraded


def test_disk_backend_shared_between_stores(tmp_path):
    cache_file = tmp_path / "activity_cache.json"
    a = CacheStore(DiskCacheBackend(cache_file=cache_file), clock=time.time, async_writes=False)
    b = CacheStore(DiskCacheBackend(cache_file=cache_file), clock=time.time, async_writes=False)

    a.set("repo-meta:o/r:info", {"full_name": "o/r"}, ttl_s=300, etag='W/"m"')
    entry = b.get("repo-meta:o/r:info")
    assert entry is not None
    assert entry.payload == {"full_name": "o/r"}
    assert entry.etag == 'W/"m"'

    assert b.delete_matching("repo-meta:o/r:*") == 1
    c = CacheStore(DiskCacheBackend(cache_file=cache_file), clock=time.time, async_writes=False)
    assert c.get("repo-meta:o/r:info") is None


def test_async_writes_are_visible_before_flush(tmp_path):
    store = CacheStore(DiskCacheBackend(cache_file=tmp_path / "c.json"), clock=time.time)
    try:
        store.set("k", [1, 2, 3], ttl_s=60)
        assert store.get("k").payload == [1, 2, 3]
        store.flush()
        assert "k" in store.keys()
    finally:
        store.close()


def test_corrupt_disk_file_reads_as_empty(tmp_path):
    cache_file = tmp_path / "c.json"
    cache_file.write_text("{not json")
    store = CacheStore(DiskCacheBackend(cache_file=cache_file), clock=time.time, async_writes=False)
    assert store.get("anything") is None
    store.set("k", 1, 60)
    assert store.get("k").payload == 1


@pytest.mark.parametrize("raw", [{"ts": 1}, "garbage", {"payload": 1, "ts": "x"}])
def test_unreadable_entries_are_misses(raw):
    store = CacheStore(clock=Clock())
    store._mem.write("k", raw if isinstance(raw, dict) else {"junk": raw})
    assert store.get("k") is None


class FlakyBackend(MemoryCacheBackend):
    """In-memory backend that can be switched off to simulate an outage."""

    def __init__(self):
        super().__init__()
        self.down = False

    def _check(self):
        if self.down:
            raise OSError("connection refused")

    def read(self, key):
        self._check()
        return super().read(key)

    def write(self, key, value):
        self._check()
        super().write(key, value)

    def delete(self, key):
        self._check()
        return super().delete(key)

    def delete_matching(self, pattern):
        self._check()
        return super().delete_matching(pattern)

    def keys(self):
        self._check()
        return super().keys()


def test_delete_during_outage_survives_recovery():
    clk = Clock()
    backend = FlakyBackend()
    store = CacheStore(backend, clock=clk, async_writes=False, backend_retry_s=60)
    store.set("issues:o/r:today", {"v": "old"}, ttl_s=86400)
    store.set("commits:o/r:today", {"v": "keep"}, ttl_s=86400)

    backend.down = True
    assert store.delete_matching("issues:o/r:*") == 1
    assert store.get("issues:o/r:today") is None

    backend.down = False
    clk.t += 61
    assert store.get("issues:o/r:today") is None
    assert backend.read("issues:o/r:today") is None
    assert store.get("commits:o/r:today").payload == {"v": "keep"}


def test_write_during_outage_replayed_on_recovery():
    clk = Clock()
    backend = FlakyBackend()
    store = CacheStore(backend, clock=clk, async_writes=False, backend_retry_s=60)
    store.set("k", {"v": "old"}, ttl_s=86400)
    store.set("gone", {"v": 1}, ttl_s=86400)

    backend.down = True
    store.set("k", {"v": "new"}, ttl_s=86400, etag="e2")
    store.delete("gone")
    assert store.is_degraded
    assert store.get("k").payload == {"v": "new"}

    backend.down = False
    clk.t += 61
    entry = store.get("k")
    assert entry.payload == {"v": "new"}
    assert entry.etag == "e2"
    assert backend.read("k")["payload"] == {"v": "new"}
    assert store.get("gone") is None
    assert backend.read("gone") is None


def test_write_after_pattern_delete_in_outage_is_kept():
    clk = Clock()
    backend = FlakyBackend()
    store = CacheStore(backend, clock=clk, async_writes=False, backend_retry_s=60)
    store.set("issues:o/r:today", {"v": "old"}, ttl_s=86400)

    backend.down = True
    store.delete_matching("issues:o/r:*")
    store.set("issues:o/r:today", {"v": "rebuilt"}, ttl_s=86400)

    backend.down = False
    clk.t += 61
    assert store.get("issues:o/r:today").payload == {"v": "rebuilt"}


def test_replay_retried_when_backend_still_down():
    clk = Clock()
    backend = FlakyBackend()
    store = CacheStore(backend, clock=clk, async_writes=False, backend_retry_s=60)

    backend.down = True
    store.set("k", {"v": 1}, ttl_s=86400)
    clk.t += 61
    # Retry window passed but the backend is still unreachable.
    assert store.get("k").payload == {"v": 1}
    assert store.is_degraded

    backend.down = False
    clk.t += 61
    assert store.get("k").payload == {"v": 1}
    assert backend.read("k") is not None


def test_delete_by_prefix_on_backend():
    clk = Clock()
    backend = FlakyBackend()
    store = CacheStore(backend, clock=clk, async_writes=False)
    store.set("repo-change-state:o/r:sync", 1, 100)
    store.set("repo-meta:o/r:info", 2, 100)
    store.set("repo-meta:o/other:info", 3, 100)

    assert store.delete_by_prefix("repo-meta:") == 2
    assert backend.keys() == ["repo-change-state:o/r:sync"]
    assert store.get("repo-meta:o/r:info") is None


def test_delete_by_prefix_while_degraded():
    clk = Clock()
    store = CacheStore(BrokenBackend(), clock=clk, async_writes=False)
    store.set("issues:o/r:today", 1, 100)
    store.set("issues:o/r:this-week", 2, 100)
    store.set("commits:o/r:today", 3, 100)
    assert store.is_degraded

    assert store.delete_by_prefix("issues:o/r:") == 2
    assert store.get("issues:o/r:today") is None
    assert store.get("commits:o/r:today").payload == 3


def test_get_etag_present_and_absent():
    store = CacheStore(clock=Clock())
    store.set("with", {"a": 1}, 100, etag='W/"abc"')
    store.set("without", {"a": 1}, 100)

    assert store.get_etag("with") == 'W/"abc"'
    assert store.get_etag("without") is None
    assert store.get_etag("missing") is None
