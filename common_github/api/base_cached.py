"""Base class for cached GitHub API resources.

Goal: make each cached resource readable + debuggable by enforcing a small interface:
- cache key + TTL policy
- one conditional upstream call (fetch_upstream) that understands ETags
- shared get() flow: cache lookup -> TTL check -> coalesced conditional refresh

Refresh outcomes:
- 304 / not modified  -> touch() the entry (same payload + ETag, new TTL); no derivation
- modified            -> derive, set(key, payload, ttl, etag)
- transport error     -> serve the stale payload if one exists (never marked fresh), else raise
- query error         -> raise, nothing cached
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar, TYPE_CHECKING

from cache.cache_base import CacheEntry
from cache.registry import CacheRegistry
from common_types import CacheDomain

from ..cache_ttl_utils import make_cache_key, ttl_for
from ..exceptions import UpstreamTransportError
from ..periods import Period, resolve_period

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class UpstreamResult:
    """What one conditional upstream call produced.

    `value` is the JSON-serializable payload to cache (None when not modified).
    """

    not_modified: bool
    value: Any = None
    etag: Optional[str] = None

    @classmethod
    def unchanged(cls, etag: Optional[str] = None) -> "UpstreamResult":
        return cls(not_modified=True, value=None, etag=etag)

    @classmethod
    def changed(cls, value: Any, etag: Optional[str] = None) -> "UpstreamResult":
        return cls(not_modified=False, value=value, etag=etag)


class CachedResourceBase(ABC, Generic[T]):
    """Base class for a cached resource backed by the registry's CacheStore.

    Subclasses define:
    - cache key format and TTL
    - the conditional network fetch
    - how a cached payload becomes the returned value
    """

    serve_stale_on_error: bool = True

    def __init__(self, api: "GitHubAPIClient", registry: CacheRegistry, *, clock: Callable[[], float] = time.time):
        self.api = api
        self.registry = registry
        self.clock = clock

    @property
    def store(self):
        return self.registry.store

    @property
    @abstractmethod
    def cache_name(self) -> str:
        """Short name used for stats keys (e.g. 'issue_stats')."""

    @abstractmethod
    def cache_key(self, **kwargs: Any) -> str:
        """Return a stable cache key for this resource."""

    @abstractmethod
    def ttl_s(self, **kwargs: Any) -> int:
        """TTL for a freshly written entry."""

    @abstractmethod
    def fetch_upstream(self, *, etag: Optional[str], **kwargs: Any) -> UpstreamResult:
        """One conditional upstream round. Must not touch the cache."""

    def value_from_payload(self, payload: Any) -> T:
        """Convert the cached payload into the returned value."""
        return payload

    def revalidation_etag(self, entry: CacheEntry, **kwargs: Any) -> Optional[str]:
        """ETag to send for `entry`; None forces an unconditional fetch."""
        return entry.etag

    def after_refresh(self, result: UpstreamResult, **kwargs: Any) -> None:
        """Hook run by the coalescing owner after a successful upstream round."""

    def get(self, *, force: bool = False, **kwargs: Any) -> T:
        """Shared get() flow. `force` skips the freshness check (still conditional)."""
        key = self.cache_key(**kwargs)
        if not force:
            entry = self.store.get(key)
            if entry is not None and entry.is_fresh(self.clock()):
                self.api._cache_hit(self.cache_name)
                return self.value_from_payload(entry.payload)
            self.api._cache_miss(f"{self.cache_name}.{'expired' if entry is not None else 'missing'}")

        payload = self.registry.coalescer.coalesce(key, lambda: self._refresh(key, force=force, **kwargs))
        return self.value_from_payload(payload)

    def _refresh(self, key: str, *, force: bool, **kwargs: Any) -> Any:
        entry = self.store.get(key)
        # Re-check: another caller may have refreshed the entry since our lookup.
        if not force and entry is not None and entry.is_fresh(self.clock()):
            self.api._cache_hit(self.cache_name)
            return entry.payload

        etag = self.revalidation_etag(entry, **kwargs) if entry is not None else None
        try:
            result = self.fetch_upstream(etag=etag, **kwargs)
            if result.not_modified and entry is None:
                # Nothing to revalidate against; should not happen without an ETag.
                result = self.fetch_upstream(etag=None, **kwargs)
        except UpstreamTransportError as e:
            if entry is not None and self.serve_stale_on_error:
                _logger.warning(
                    "%s: upstream unavailable (%s); serving stale entry %s (age %.0fs)",
                    self.cache_name, e, key, entry.age_s(self.clock()),
                )
                self.api._cache_stale_served(self.cache_name)
                return entry.payload
            raise

        if result.not_modified:
            self.store.touch(key, self.ttl_s(**kwargs))
            self.api._cache_revalidated(self.cache_name)
            _logger.debug("%s: %s not modified, TTL refreshed", self.cache_name, key)
            self.after_refresh(result, **kwargs)
            return entry.payload  # type: ignore[union-attr]

        self.store.set(key, result.value, self.ttl_s(**kwargs), result.etag)
        self.api._cache_write(self.cache_name)
        self.after_refresh(result, **kwargs)
        return result.value


class PeriodCachedResource(CachedResourceBase[T]):
    """Cached resource keyed by (repo, period): `{domain}:{repo}:{period}[:extra]`.

    The payload records the resolved window; once "today" rolls over to a new day the
    stored ETag no longer describes the same window and the refresh is unconditional.
    """

    domain: CacheDomain

    def __init__(
        self,
        api: "GitHubAPIClient",
        registry: CacheRegistry,
        *,
        clock: Callable[[], float] = time.time,
        tz: Optional[tzinfo] = None,
    ):
        super().__init__(api, registry, clock=clock)
        self.tz = tz

    def now(self) -> datetime:
        if self.tz is not None:
            return datetime.fromtimestamp(self.clock(), tz=self.tz)
        return datetime.fromtimestamp(self.clock()).astimezone()

    def resolve(self, period: Optional[str] = None, explicit_date: Any = None) -> Period:
        return resolve_period(period, explicit_date, now=self.now())

    def cache_key_extra(self, **kwargs: Any) -> Tuple[Any, ...]:
        return ()

    def cache_key(self, *, repo: str, period: Period, **kwargs: Any) -> str:
        return make_cache_key(self.domain, repo, period.name, *self.cache_key_extra(**kwargs))

    def ttl_s(self, *, period: Period, **kwargs: Any) -> int:
        return ttl_for(self.domain, period.name)

    def revalidation_etag(self, entry: CacheEntry, *, period: Period, **kwargs: Any) -> Optional[str]:
        window = (entry.payload or {}).get("period") if isinstance(entry.payload, dict) else None
        if window != period_to_dict(period):
            return None
        return entry.etag

    def get_for_period(
        self,
        repo: str,
        period: Optional[str] = None,
        explicit_date: Any = None,
        *,
        force: bool = False,
        **kwargs: Any,
    ) -> T:
        return self.get(force=force, repo=repo, period=self.resolve(period, explicit_date), **kwargs)


def period_to_dict(period: Period) -> Dict[str, str]:
    return {"name": period.name, "start": period.start.isoformat(), "end": period.end.isoformat()}
