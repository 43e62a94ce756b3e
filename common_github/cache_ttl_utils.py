"""Shared TTL and cache-key utilities for all period-scoped caches.

Key shape (one place, so webhook invalidation can glob on it):

    {domain}:{repo}:{period}[:{extra}...]

    issues:owner/repo:today
    commits:owner/repo:date-2026-01-24
    languages:owner/repo:this-week:alice

TTL schedule:
  - today, this-week                                   -> 30m (1800s)
  - yesterday, last-week, this-month, month-MM-YYYY,
    date-YYYY-MM-DD                                    -> 24h (86400s)
  - repo-meta -> 5m, search -> 2m, repo-change-state -> 7d
  - analytics (cross-repo aggregates) -> 15m, daily trends 30m
"""
from typing import Optional, Union

from common import (
    DEFAULT_ANALYTICS_TTL_S,
    DEFAULT_CHANGE_STATE_TTL_S,
    DEFAULT_CLOSED_PERIOD_TTL_S,
    DEFAULT_HOT_PERIOD_TTL_S,
    DEFAULT_REPO_META_TTL_S,
    DEFAULT_SEARCH_LISTING_TTL_S,
    HOT_PERIODS,
)
from common_types import CacheDomain


def period_ttl_s(period: Optional[str]) -> int:
    """TTL for a period-scoped entry: short while the window still includes now."""
    p = str(period or "today").strip().lower()
    if p in HOT_PERIODS:
        return DEFAULT_HOT_PERIOD_TTL_S
    return DEFAULT_CLOSED_PERIOD_TTL_S


def ttl_for(domain: Union[CacheDomain, str], period: Optional[str] = None) -> int:
    d = CacheDomain(domain)
    if d == CacheDomain.REPO_META:
        return DEFAULT_REPO_META_TTL_S
    if d == CacheDomain.SEARCH:
        return DEFAULT_SEARCH_LISTING_TTL_S
    if d == CacheDomain.REPO_CHANGE_STATE:
        return DEFAULT_CHANGE_STATE_TTL_S
    if d == CacheDomain.ANALYTICS:
        return DEFAULT_ANALYTICS_TTL_S
    return period_ttl_s(period)


def make_cache_key(domain: Union[CacheDomain, str], repo: str, period: str, *extra: object) -> str:
    parts = [CacheDomain(domain).value, str(repo).strip(), str(period)]
    parts.extend(str(e) for e in extra if e is not None and str(e) != "")
    return ":".join(parts)


def repo_pattern(domain: Union[CacheDomain, str], repo: str) -> str:
    """Glob matching every entry of `domain` for `repo` (all periods/extras)."""
    return f"{CacheDomain(domain).value}:{str(repo).strip()}:*"
