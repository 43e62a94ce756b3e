"""Repository metadata and repository search (REST).

Resources:
  GET /repos/{owner}/{repo}                    -> RepoInfo        (TTL 5m, conditional)
  GET /user/repos?sort=updated&per_page=100    -> search listing  (TTL 2m)

Example API Response (GET /repos/{owner}/{repo}, truncated):
  {
    "full_name": "owner/repo",
    "description": "Dashboard backend",
    "stargazers_count": 12,
    "default_branch": "main",
    "private": false,
    "pushed_at": "2026-01-22T08:00:00Z",
    "updated_at": "2026-01-22T08:01:00Z"
  }

Search keystrokes filter the cached listing locally (full_name or description substring,
case-insensitive, first 10 matches), so typing does not hit GitHub.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from common_types import CacheDomain

from ..cache_ttl_utils import make_cache_key, ttl_for
from ..exceptions import GitHubNotFoundError
from ..github_types import RepoInfo, RepoSummary, repo_info_from_rest, repo_summary_from_rest
from .base_cached import CachedResourceBase, UpstreamResult

_logger = logging.getLogger(__name__)

SEARCH_MIN_QUERY_LEN = 2
SEARCH_MAX_RESULTS = 10


class RepoInfoCached(CachedResourceBase[RepoInfo]):
    @property
    def cache_name(self) -> str:
        return "repo_info"

    def cache_key(self, *, repo: str, **kwargs: Any) -> str:
        return make_cache_key(CacheDomain.REPO_META, repo, "info")

    def ttl_s(self, **kwargs: Any) -> int:
        return ttl_for(CacheDomain.REPO_META)

    def value_from_payload(self, payload: Any) -> RepoInfo:
        return RepoInfo.from_dict(payload or {})

    def fetch_upstream(self, *, etag: Optional[str], repo: str, **kwargs: Any) -> UpstreamResult:
        resp = self.api.rest_get(f"/repos/{repo}", etag=etag)
        if resp.not_modified:
            return UpstreamResult.unchanged(etag=resp.etag)
        return UpstreamResult.changed(repo_info_from_rest(resp.data).to_dict(), etag=resp.etag)

    def get_repo_info(self, repo: str) -> Optional[RepoInfo]:
        """RepoInfo, or None when the repository does not exist (or is not visible)."""
        try:
            return self.get(repo=repo)
        except GitHubNotFoundError:
            return None


class RepoSearchCached(CachedResourceBase[List[RepoSummary]]):
    @property
    def cache_name(self) -> str:
        return "repo_search"

    def cache_key(self, **kwargs: Any) -> str:
        return make_cache_key(CacheDomain.SEARCH, "user", "repos")

    def ttl_s(self, **kwargs: Any) -> int:
        return ttl_for(CacheDomain.SEARCH)

    def value_from_payload(self, payload: Any) -> List[RepoSummary]:
        return [RepoSummary.from_dict(r) for r in payload or []]

    def fetch_upstream(self, *, etag: Optional[str], **kwargs: Any) -> UpstreamResult:
        resp = self.api.rest_get("/user/repos", params={"sort": "updated", "per_page": 100}, etag=etag)
        if resp.not_modified:
            return UpstreamResult.unchanged(etag=resp.etag)
        repos = []
        for row in resp.data or []:
            try:
                repos.append(repo_summary_from_rest(row).to_dict())
            except (KeyError, TypeError, ValueError) as e:
                _logger.debug("skipping malformed repository row: %s", e)
        return UpstreamResult.changed(repos, etag=resp.etag)

    def search(self, query: str) -> List[RepoSummary]:
        q = str(query or "").strip().lower()
        if len(q) < SEARCH_MIN_QUERY_LEN:
            return []
        out = [
            r for r in self.get()
            if q in r.full_name.lower() or q in (r.description or "").lower()
        ]
        return out[:SEARCH_MAX_RESULTS]
