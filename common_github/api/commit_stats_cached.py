"""Commit counts per user for a period (REST).

Resource:
  GET /repos/{owner}/{repo}/commits?since={start}&until={end}&per_page=100&page={n}

Example API Response (truncated):
  [
    {
      "sha": "21a03b316dc1e5031183965e5798b0d9fe2e64b3",
      "author": {"login": "Alice"},
      "committer": {"login": "web-flow"},
      "commit": {"message": "Fix login", "author": {"date": "2026-01-22T09:12:00Z"}}
    }
  ]

Cached Fields:
  - per-user commit counts (login lowercased; commits without a GitHub login are dropped)
  - up to COMMITS_MAX_PAGES pages (1000 commits)

Conditional requests:
  The ETag of page 1 is stored; GitHub lists newest first, so an unchanged first page means
  nothing was pushed into the window.

TTL:
  today / this-week 30m, everything else 24h.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from common import COMMITS_MAX_PAGES
from common_types import CacheDomain

from ..github_types import CommitRecord, commit_from_rest, format_github_datetime
from ..periods import Period
from .base_cached import PeriodCachedResource, UpstreamResult, period_to_dict

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserCommitCount:
    username: str
    commits: int

    @property
    def total(self) -> int:
        return self.commits

    def to_dict(self) -> Dict[str, Any]:
        return {"username": self.username, "commits": self.commits, "total": self.commits}


def list_period_commits(
    api: "GitHubAPIClient",
    repo: str,
    period: Period,
    *,
    etag: Optional[str] = None,
    max_pages: int = COMMITS_MAX_PAGES,
) -> Optional[tuple]:
    """Return (commits, first_page_etag), or None when page 1 is not modified."""
    commits: List[CommitRecord] = []
    first_etag: Optional[str] = None
    params: Dict[str, Any] = {
        "since": format_github_datetime(period.start),
        "until": format_github_datetime(period.end),
        "per_page": 100,
    }
    for page in range(1, int(max_pages) + 1):
        resp = api.rest_get(
            f"/repos/{repo}/commits",
            params=dict(params, page=page),
            etag=etag if page == 1 else None,
        )
        if resp.not_modified:
            return None
        if page == 1:
            first_etag = resp.etag
        rows = resp.data if isinstance(resp.data, list) else []
        for row in rows:
            try:
                commits.append(commit_from_rest(row))
            except ValueError as e:
                _logger.warning("%s: skipping malformed commit: %s", repo, e)
        if not rows or not resp.next_url:
            break
    return commits, first_etag


def count_commits_by_user(commits: List[CommitRecord]) -> List[UserCommitCount]:
    counts: Dict[str, int] = {}
    for c in commits:
        if c.author_login:
            counts[c.author_login] = counts.get(c.author_login, 0) + 1
    return sorted(
        (UserCommitCount(username=u, commits=n) for u, n in counts.items()),
        key=lambda r: (-r.commits, r.username),
    )


class CommitStatsCached(PeriodCachedResource[List[UserCommitCount]]):
    domain = CacheDomain.COMMITS

    @property
    def cache_name(self) -> str:
        return "commit_stats"

    def value_from_payload(self, payload: Any) -> List[UserCommitCount]:
        return [
            UserCommitCount(username=str(u["username"]), commits=int(u.get("commits") or 0))
            for u in (payload or {}).get("users") or []
        ]

    def fetch_upstream(self, *, etag: Optional[str], repo: str, period: Period, **kwargs: Any) -> UpstreamResult:
        listed = list_period_commits(self.api, repo, period, etag=etag)
        if listed is None:
            return UpstreamResult.unchanged(etag=etag)
        commits, first_etag = listed
        users = count_commits_by_user(commits)
        _logger.info("%s %s: %d commits by %d user(s)", repo, period.name, len(commits), len(users))
        payload = {"period": period_to_dict(period), "users": [u.to_dict() for u in users]}
        return UpstreamResult.changed(payload, etag=first_etag)
