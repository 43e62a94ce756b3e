# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Per-user issue statistics for a period (incremental sync engine).

Resources:
  head:   GET /repos/{owner}/{repo}/issues?state=all&sort=updated&direction=desc&per_page=1
          (conditional; 304 => no issue changed since the cached result => TTL refresh only)
  scan:   GraphQL repository.issues(orderBy: UPDATED_AT DESC, first: 100) with labels,
          assignees and recent ASSIGNED_EVENT timeline items

Example aggregated payload (cached):
  {
    "period": {"name": "today", "start": "2026-01-22T00:00:00+00:00", "end": "2026-01-22T23:59:59.999000+00:00"},
    "users": [
      {"username": "alice", "counts": {"assigned": 1, "in_progress": 0, ...}, "weight": 3.0, "total": 1}
    ],
    "scanned": 37, "skipped": 0, "pages": 1
  }

Scan rules:
  - items come newest-updated first; the first item with updated_at < (period start - 7d)
    ends the scan (boundary inclusive: updated_at == cutoff is still processed)
  - at most ISSUES_MAX_PAGES pages
  - an item counts for a user only if the user is a *current* assignee AND the user's most
    recent assignment event falls inside the period window
  - malformed nodes are skipped (WARNING) without failing the sync

TTL:
  today / this-week 30m, everything else 24h.

SyncMetadata (`repo-change-state:{repo}:sync`):
  last_fetched_at / last_full_refresh_at / etag. When the last full refresh is older than 24h
  (or missing) the stored ETag is ignored and the scan always runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING

from common import (
    ASSIGNMENT_LOOKBACK_DAYS,
    DEFAULT_CHANGE_STATE_TTL_S,
    FULL_REFRESH_INTERVAL_S,
    ISSUES_MAX_PAGES,
    ISSUES_PAGE_SIZE,
)
from cache.cache_base import CacheEntry
from common_types import CacheDomain, IssueStatus

from ..cache_ttl_utils import make_cache_key
from ..exceptions import UpstreamQueryError
from ..github_types import WorkItem, work_item_page_from_graphql
from ..periods import Period
from ..status_labels import StatusLabelTable, derive_status
from ..weights import item_weight
from .base_cached import PeriodCachedResource, UpstreamResult, period_to_dict

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)

ISSUES_QUERY = """
query GetIssues($owner: String!, $name: String!, $first: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    issues(first: $first, after: $cursor, orderBy: {field: UPDATED_AT, direction: DESC}) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id number title body url state createdAt updatedAt closedAt
        labels(first: 20) { nodes { name } }
        assignees(first: 10) { nodes { login } }
        timelineItems(last: 50, itemTypes: [ASSIGNED_EVENT]) {
          nodes {
            __typename
            ... on AssignedEvent { createdAt assignee { ... on User { login } } }
          }
        }
      }
    }
  }
}
"""


def split_repo(repo: str) -> Tuple[str, str]:
    owner, _, name = str(repo or "").strip().partition("/")
    if not owner or not name or "/" in name:
        raise ValueError(f"repository must be 'owner/name', got {repo!r}")
    return owner, name


# =============================================================================
# Scan
# =============================================================================

@dataclass
class ScanResult:
    items: List[WorkItem] = field(default_factory=list)
    pages: int = 0
    skipped: int = 0
    stopped_at_cutoff: bool = False


def scan_work_items(
    api: "GitHubAPIClient",
    repo: str,
    *,
    query: str,
    cutoff: datetime,
    page_size: int,
    max_pages: int,
) -> ScanResult:
    """Cursor-paginate recency-ordered issues until the cutoff or the page limit."""
    owner, name = split_repo(repo)
    out = ScanResult()
    cursor: Optional[str] = None
    while out.pages < max_pages:
        data = api.graphql(query, {"owner": owner, "name": name, "first": int(page_size), "cursor": cursor})
        out.pages += 1
        try:
            page = work_item_page_from_graphql(data, repo)
        except ValueError as e:
            raise UpstreamQueryError(status_code=200, endpoint="graphql", message=str(e)) from e
        out.skipped += page.skipped
        for item in page.items:
            if item.updated_at < cutoff:
                out.stopped_at_cutoff = True
                break
            out.items.append(item)
        if out.stopped_at_cutoff or not page.page_info.has_next_page or not page.page_info.end_cursor:
            break
        cursor = page.page_info.end_cursor
    else:
        _logger.info("%s: issue scan hit the page limit (%d pages)", repo, max_pages)
    return out


# =============================================================================
# Aggregation
# =============================================================================

@dataclass
class PeriodUserStats:
    username: str
    counts: Dict[IssueStatus, int] = field(default_factory=lambda: {s: 0 for s in IssueStatus})
    weight: float = 0.0
    total: int = 0

    def count(self, status: IssueStatus) -> int:
        return int(self.counts.get(status, 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "counts": {s.value: int(self.counts.get(s, 0)) for s in IssueStatus},
            "weight": float(self.weight),
            "total": int(self.total),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PeriodUserStats":
        raw = d.get("counts") or {}
        return cls(
            username=str(d["username"]),
            counts={s: int(raw.get(s.value, 0) or 0) for s in IssueStatus},
            weight=float(d.get("weight") or 0.0),
            total=int(d.get("total") or 0),
        )


def aggregate_period_stats(
    items: Iterable[WorkItem],
    period: Period,
    table: Optional[StatusLabelTable] = None,
) -> List[PeriodUserStats]:
    """Per-user status tallies for items whose latest assignment falls inside `period`."""
    by_user: Dict[str, PeriodUserStats] = {}
    for item in items:
        if not item.assignees:
            continue
        status = derive_status(item.labels, table)
        latest = item.latest_assignments()
        weight = None
        for username in sorted(item.assignees):
            assigned_at = latest.get(username)
            if assigned_at is None or not period.contains(assigned_at):
                continue
            if weight is None:
                weight = item_weight(item.title, item.body, item.labels)
            st = by_user.setdefault(username, PeriodUserStats(username=username))
            st.counts[status] = st.counts.get(status, 0) + 1
            st.weight += weight
            st.total += 1
    return sorted(by_user.values(), key=lambda s: (-s.total, s.username))


# =============================================================================
# SyncMetadata
# =============================================================================

@dataclass(frozen=True)
class SyncMetadata:
    repo: str
    last_fetched_at: float
    last_full_refresh_at: Optional[float]
    etag: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo,
            "last_fetched_at": self.last_fetched_at,
            "last_full_refresh_at": self.last_full_refresh_at,
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SyncMetadata":
        return cls(
            repo=str(d.get("repo") or ""),
            last_fetched_at=float(d.get("last_fetched_at") or 0.0),
            last_full_refresh_at=float(d["last_full_refresh_at"]) if d.get("last_full_refresh_at") is not None else None,
            etag=d.get("etag") or None,
        )


def sync_metadata_key(repo: str) -> str:
    return make_cache_key(CacheDomain.REPO_CHANGE_STATE, repo, "sync")


# =============================================================================
# Cached resource
# =============================================================================

class IssueStatsCached(PeriodCachedResource[List[PeriodUserStats]]):
    domain = CacheDomain.ISSUES

    def __init__(self, api: "GitHubAPIClient", registry, *, table: Optional[StatusLabelTable] = None, **kwargs: Any):
        super().__init__(api, registry, **kwargs)
        self.table = table

    @property
    def cache_name(self) -> str:
        return "issue_stats"

    def value_from_payload(self, payload: Any) -> List[PeriodUserStats]:
        return [PeriodUserStats.from_dict(u) for u in (payload or {}).get("users") or []]

    # -- SyncMetadata --------------------------------------------------------

    def sync_metadata(self, repo: str) -> Optional[SyncMetadata]:
        entry = self.store.get(sync_metadata_key(repo))
        if entry is None or not isinstance(entry.payload, dict):
            return None
        return SyncMetadata.from_dict(entry.payload)

    def needs_full_refresh(self, repo: str) -> bool:
        meta = self.sync_metadata(repo)
        if meta is None or meta.last_full_refresh_at is None:
            return True
        return (self.clock() - meta.last_full_refresh_at) >= FULL_REFRESH_INTERVAL_S

    def revalidation_etag(self, entry: CacheEntry, *, repo: str, period: Period, **kwargs: Any) -> Optional[str]:
        if self.needs_full_refresh(repo):
            _logger.debug("%s: last full refresh older than %ss, ignoring ETag", repo, FULL_REFRESH_INTERVAL_S)
            return None
        return super().revalidation_etag(entry, repo=repo, period=period, **kwargs)

    # -- fetch ---------------------------------------------------------------

    def fetch_upstream(self, *, etag: Optional[str], repo: str, period: Period, **kwargs: Any) -> UpstreamResult:
        head = self.api.rest_get(
            f"/repos/{repo}/issues",
            params={"state": "all", "sort": "updated", "direction": "desc", "per_page": 1},
            etag=etag,
        )
        if head.not_modified:
            return UpstreamResult.unchanged(etag=head.etag)

        scan = scan_work_items(
            self.api,
            repo,
            query=ISSUES_QUERY,
            cutoff=period.cutoff(ASSIGNMENT_LOOKBACK_DAYS),
            page_size=ISSUES_PAGE_SIZE,
            max_pages=ISSUES_MAX_PAGES,
        )
        users = aggregate_period_stats(scan.items, period, self.table)
        _logger.info(
            "%s %s: %d items scanned in %d page(s), %d skipped, %d user(s)",
            repo, period.name, len(scan.items), scan.pages, scan.skipped, len(users),
        )
        payload = {
            "period": period_to_dict(period),
            "users": [u.to_dict() for u in users],
            "scanned": len(scan.items),
            "skipped": scan.skipped,
            "pages": scan.pages,
        }
        return UpstreamResult.changed(payload, etag=head.etag)

    def after_refresh(self, result: UpstreamResult, *, repo: str, **kwargs: Any) -> None:
        now = self.clock()
        prev = self.sync_metadata(repo)
        # Every non-304 round is a complete scan of the window.
        full = not result.not_modified
        meta = SyncMetadata(
            repo=repo,
            last_fetched_at=now,
            last_full_refresh_at=now if full else (prev.last_full_refresh_at if prev else None),
            etag=result.etag or (prev.etag if prev else None),
        )
        self.store.set(sync_metadata_key(repo), meta.to_dict(), DEFAULT_CHANGE_STATE_TTL_S)

    def sync_period(
        self,
        repo: str,
        period: Optional[str] = None,
        explicit_date: Any = None,
        *,
        force: bool = False,
    ) -> List[PeriodUserStats]:
        return self.get_for_period(repo, period, explicit_date, force=force)
