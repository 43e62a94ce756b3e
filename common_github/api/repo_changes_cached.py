"""Repository change detection (REST, conditional).

Resource:
  GET /repos/{owner}/{repo}   (If-None-Match: stored ETag)

State string:
  "{pushed_at}|{updated_at}"  e.g. "2026-01-22T08:00:00Z|2026-01-22T08:01:00Z"

Decision:
  304                         -> unchanged (free; no quota used)
  200, state == stored state  -> unchanged (store refreshed ETag)
  200, state != stored state  -> changed   (store new state + ETag)
  any error                   -> changed   (nothing stored; the caller refreshes to be safe)

Stored under `repo-change-state:{repo}:state` for 7 days.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TYPE_CHECKING

from cache.registry import CacheRegistry
from common_types import CacheDomain

from ..cache_ttl_utils import make_cache_key, ttl_for
from ..exceptions import GitHubAPIError
from ..github_types import repo_info_from_rest

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoChangeResult:
    changed: bool
    state: Optional[str]


def change_state_key(repo: str) -> str:
    return make_cache_key(CacheDomain.REPO_CHANGE_STATE, repo, "state")


class RepoChangeDetector:
    def __init__(self, api: "GitHubAPIClient", registry: CacheRegistry, *, clock: Callable[[], float] = time.time):
        self.api = api
        self.registry = registry
        self.clock = clock

    def check_repo_changes(self, repo: str) -> RepoChangeResult:
        key = change_state_key(repo)
        # Concurrent checks for one repo share a single conditional request.
        return self.registry.coalescer.coalesce(key, lambda: self._check(repo, key))

    def _check(self, repo: str, key: str) -> RepoChangeResult:
        store = self.registry.store
        entry = store.get(key)
        stored_state = entry.payload.get("state") if entry is not None and isinstance(entry.payload, dict) else None
        try:
            resp = self.api.rest_get(f"/repos/{repo}", etag=entry.etag if entry is not None else None)
            if resp.not_modified and entry is not None:
                store.touch(key, ttl_for(CacheDomain.REPO_CHANGE_STATE))
                _logger.debug("%s: not modified (304)", repo)
                return RepoChangeResult(changed=False, state=stored_state)
            if resp.not_modified:
                resp = self.api.rest_get(f"/repos/{repo}")
            info = repo_info_from_rest(resp.data)
        except (GitHubAPIError, ValueError) as e:
            _logger.warning("%s: change check failed (%s); assuming changed", repo, e)
            return RepoChangeResult(changed=True, state=stored_state)

        state = f"{info.pushed_at or ''}|{info.updated_at or ''}"
        store.set(key, {"state": state, "checked_at": self.clock()}, ttl_for(CacheDomain.REPO_CHANGE_STATE), resp.etag)
        changed = state != stored_state
        _logger.debug("%s: state %s (%s)", repo, state, "changed" if changed else "unchanged")
        return RepoChangeResult(changed=changed, state=state)
