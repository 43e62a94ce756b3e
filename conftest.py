"""
Shared pytest fixtures: a controllable clock, an in-process cache registry and a
scripted stand-in for GitHubAPIClient (same rest_get/graphql surface, no network).

Run from the repository root:
    pytest -v
"""

import sys
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

# Set up path for imports
repo_root = Path(__file__).parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from cache.registry import CacheRegistry
from common_github import RestResponse

# Thursday; the week started Monday 2026-01-19.
NOW = datetime(2026, 1, 22, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = NOW):
        self.t = start.timestamp()

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += float(seconds)


class EtagRoute:
    """REST resource that honours If-None-Match like GitHub does."""

    def __init__(self, data: Any, etag: str = 'W/"v1"'):
        self.data = data
        self.etag = etag
        self.error: Optional[Exception] = None

    def update(self, data: Any, etag: str) -> None:
        self.data = data
        self.etag = etag

    def __call__(self, params: Dict[str, Any], etag: Optional[str]) -> RestResponse:
        if self.error is not None:
            raise self.error
        if etag and etag == self.etag:
            return RestResponse(status_code=304, data=None, etag=self.etag)
        return RestResponse(status_code=200, data=self.data, etag=self.etag)


class FakeGitHubAPI:
    def __init__(self) -> None:
        self.routes: Dict[str, Callable[[Dict[str, Any], Optional[str]], RestResponse]] = {}
        self.rest_calls: List[tuple] = []
        self.graphql_pages: Dict[Optional[str], Dict[str, Any]] = {}
        self.graphql_error: Optional[Exception] = None
        self.graphql_calls: List[Dict[str, Any]] = []
        self.quota: Optional[int] = None
        self.cache_events: Counter = Counter()

    def route(self, endpoint: str, data: Any, etag: str = 'W/"v1"') -> EtagRoute:
        r = EtagRoute(data, etag)
        self.routes[endpoint] = r
        return r

    def rest_get(self, endpoint, *, params=None, etag=None, timeout=None) -> RestResponse:
        self.rest_calls.append((endpoint, dict(params or {}), etag))
        if endpoint not in self.routes:
            raise AssertionError(f"unexpected REST call {endpoint}")
        return self.routes[endpoint](dict(params or {}), etag)

    def graphql(self, query, variables=None, *, timeout=None) -> Dict[str, Any]:
        self.graphql_calls.append(dict(variables or {}))
        if self.graphql_error is not None:
            raise self.graphql_error
        return self.graphql_pages[(variables or {}).get("cursor")]

    def remaining_quota(self) -> Optional[int]:
        return self.quota

    def calls_to(self, endpoint: str) -> List[tuple]:
        return [c for c in self.rest_calls if c[0] == endpoint]

    def _cache_hit(self, name: str) -> None:
        self.cache_events[f"hit:{name}"] += 1

    def _cache_miss(self, name: str) -> None:
        self.cache_events[f"miss:{name}"] += 1

    def _cache_write(self, name: str) -> None:
        self.cache_events[f"write:{name}"] += 1

    def _cache_revalidated(self, name: str) -> None:
        self.cache_events[f"revalidated:{name}"] += 1

    def _cache_stale_served(self, name: str) -> None:
        self.cache_events[f"stale:{name}"] += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock):
    reg = CacheRegistry.create(None, clock=clock)
    yield reg
    reg.close()


@pytest.fixture
def fake_api() -> FakeGitHubAPI:
    return FakeGitHubAPI()
