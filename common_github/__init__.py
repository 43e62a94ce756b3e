# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub API client for gh-activity-cache.

API USAGE NOTES:
================
1. ETag Support (Conditional Requests)
   - rest_get() supports If-None-Match
   - 304 Not Modified responses DON'T count against the rate limit (or our REST budget)
   - Cached resources keep the ETag next to the payload and revalidate with it

2. Rate limit tracking
   - Every REST response carries X-RateLimit-*; we keep the latest core values so the
     background scheduler can skip a cycle *before* running out (no extra /rate_limit call)

3. GraphQL
   - Issue scans use POST /graphql (separate point-based bucket, always authenticated)

Errors are mapped to the typed classes in `common_github.exceptions` right here, so
cached resources only ever see: UpstreamTransportError (retry later), UpstreamQueryError
(4xx / GraphQL errors, never cached) or QuotaExhaustedError.
"""

# Standard library imports
import json
import logging
import re
import threading
import time
import urllib.parse
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

# Third-party imports
import requests
import yaml

# Local imports
from common import DEFAULT_GRAPHQL_TIMEOUT_S, DEFAULT_REST_TIMEOUT_S

from .exceptions import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubNotFoundError,
    QuotaExhaustedError,
    UpstreamQueryError,
    UpstreamTransportError,
)

# Module logger
_logger = logging.getLogger(__name__)


# ======================================================================================
# PER-CLIENT API STATISTICS
# ======================================================================================

class GitHubAPIStats:
    """Per-client REST/GraphQL call statistics (reported by the CLI with -v).

    Worker threads share one client, so every counter update goes through `lock`.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.reset()

    def reset(self):
        """Reset all statistics."""
        with self.lock:
            # REST call stats
            self.rest_calls_total = 0
            self.rest_calls_by_label = {}  # Dict[str, int] - count by API endpoint label
            self.rest_success_total = 0
            self.rest_time_total_s = 0.0

            # Error stats
            self.rest_errors_total = 0
            self.rest_errors_by_status = {}  # Dict[int, int]
            self.rest_last_error = {}  # Dict[str, Any]

            # ETag stats (conditional requests)
            self.etag_304_total = 0  # 304 Not Modified responses (don't count against rate limit!)
            self.etag_304_by_label = {}  # Dict[str, int]

            # GraphQL
            self.graphql_calls_total = 0
            self.graphql_errors_total = 0
            self.graphql_time_total_s = 0.0

            # Cached-resource stats, by cache name
            self.cache_hits = {}  # Dict[str, int]
            self.cache_misses = {}  # Dict[str, int]
            self.cache_writes_ops = {}  # Dict[str, int]
            self.cache_revalidated = {}  # Dict[str, int] - 304s that only refreshed TTL
            self.cache_stale_served = {}  # Dict[str, int]

            # Ordered call log, e.g. {"seq": 1, "kind": "rest", "text": "GET /repos/o/r  # repos_issues"}
            self._api_call_log_seq = 0
            self._api_call_log = []  # List[Dict[str, Any]]

    def log_actual_api_call(self, *, kind: str, text: str) -> None:
        """Append an ordered, human-readable API call record."""
        with self.lock:
            self._api_call_log_seq += 1
            self._api_call_log.append({"seq": self._api_call_log_seq, "kind": kind, "text": text})

    def get_actual_api_call_log(self) -> List[Dict[str, Any]]:
        with self.lock:
            return list(self._api_call_log)

    def bump(self, counter: Dict[Any, int], name: Any) -> None:
        k = name if isinstance(name, int) else (str(name or "").strip() or "unknown")
        with self.lock:
            counter[k] = int(counter.get(k, 0) or 0) + 1

    def add(self, field: str, amount: float = 1) -> None:
        with self.lock:
            setattr(self, field, getattr(self, field) + amount)

    def record_rest_error(self, status: int, url: str, body: str) -> None:
        with self.lock:
            self.rest_errors_total += 1
            if status:
                self.rest_errors_by_status[status] = int(self.rest_errors_by_status.get(status, 0) or 0) + 1
            self.rest_last_error = {"status": status, "url": url, "body": body[:300]}


@dataclass(frozen=True)
class RestResponse:
    """Decoded REST response. `data` is None for 304 Not Modified."""

    status_code: int
    data: Any
    etag: Optional[str]
    next_url: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


def format_seconds_delta(seconds: int) -> str:
    s = max(0, int(seconds))
    if s < 60:
        return f"{s}s"
    m, s = divmod(s, 60)
    if m < 60:
        return f"{m}m{s:02d}s"
    h, m = divmod(m, 60)
    return f"{h}h{m:02d}m"


class GitHubAPIClient:
    """GitHub API client with token detection, ETags and rate limit tracking.

    Example:
        client = GitHubAPIClient()
        resp = client.rest_get("/repos/owner/repo", etag=prev_etag)
        if resp.not_modified:
            ...  # reuse cached payload
    """

    @staticmethod
    def get_github_token_from_file() -> Optional[str]:
        """Get GitHub token from a local config file.

        Currently supported locations (first match wins):
        - ~/.config/github-token   (single line token)
        - ~/.config/gh/hosts.yml   (GitHub CLI login; oauth_token)
        """
        try:
            token_file = Path.home() / ".config" / "github-token"
            if token_file.exists():
                tok = (token_file.read_text() or "").strip()
                if tok:
                    return tok
        except OSError:
            pass
        return GitHubAPIClient.get_github_token_from_cli()

    @staticmethod
    def get_github_token_from_cli() -> Optional[str]:
        """Get GitHub token from GitHub CLI configuration (~/.config/gh/hosts.yml)."""
        try:
            gh_config_path = Path.home() / '.config' / 'gh' / 'hosts.yml'
            if gh_config_path.exists():
                with open(gh_config_path, 'r') as f:
                    config = yaml.safe_load(f)
                    if config and 'github.com' in config:
                        github_config = config['github.com']
                        if 'oauth_token' in github_config:
                            return github_config['oauth_token']
                        if 'users' in github_config:
                            for user, user_config in github_config['users'].items():
                                if 'oauth_token' in user_config:
                                    return user_config['oauth_token']
        except (OSError, yaml.YAMLError):
            pass
        return None

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        base_url: str = "https://api.github.com",
        debug_rest: bool = False,
        require_auth: bool = False,
        max_rest_calls: Optional[int] = None,
        rest_timeout_s: float = DEFAULT_REST_TIMEOUT_S,
        graphql_timeout_s: float = DEFAULT_GRAPHQL_TIMEOUT_S,
    ):
        """Initialize GitHub API client.

        Args:
            token: GitHub personal access token. If not provided, will try:
                   1. ~/.config/github-token (if present)
                   2. GitHub CLI config (~/.config/gh/hosts.yml)
            require_auth: If True, raise an error if we cannot find a token.
            max_rest_calls: Hard cap on billable REST calls for this client instance
                            (304s are free and not counted).
        """
        self.token = token or self.get_github_token_from_file()
        self.base_url = base_url.rstrip("/")
        self.headers = {'Accept': 'application/vnd.github.v3+json'}
        self.logger = logging.getLogger(self.__class__.__name__)
        self._debug_rest = bool(debug_rest)
        self.rest_timeout_s = float(rest_timeout_s)
        self.graphql_timeout_s = float(graphql_timeout_s)
        self.stats = GitHubAPIStats()

        try:
            self._rest_budget_max: Optional[int] = int(max_rest_calls) if max_rest_calls is not None else None
            if self._rest_budget_max is not None and self._rest_budget_max <= 0:
                self._rest_budget_max = 0
        except (ValueError, TypeError):
            self._rest_budget_max = None
        self._rest_budget_exhausted: bool = False
        self._rest_budget_exhausted_reason: str = ""

        if require_auth and not self.token:
            raise GitHubAuthError(
                status_code=401,
                endpoint="",
                message=(
                    "GitHub API authentication is required but no token was found. "
                    "Pass --token, or login with gh so ~/.config/gh/hosts.yml exists."
                ),
            )

        if self.token:
            self.headers['Authorization'] = f'token {self.token}'

        # Latest rate limit info from response headers.
        # Format: {"remaining": 1234, "limit": 5000, "reset_epoch": 1766947200, ...}
        self._cached_rate_limit_info: Optional[Dict[str, Any]] = None
        self._cached_graphql_rate_limit_info: Optional[Dict[str, Any]] = None

    # ----------------------------------------------------------------------------------
    # Budget / labels / stats
    # ----------------------------------------------------------------------------------

    def _budget_maybe_consume_or_raise(self, label: str) -> None:
        """Raise QuotaExhaustedError when the per-client REST budget is used up.

        IMPORTANT: 304 Not Modified responses (ETags) do NOT count against GitHub's rate limit,
        so we exclude them from our budget calculation. Only billable API calls (non-304) count.
        """
        if self._rest_budget_max is None:
            return
        if self._rest_budget_exhausted:
            raise QuotaExhaustedError(endpoint=label, message=self._rest_budget_exhausted_reason, status_code=0)
        billable_calls = int(self.stats.rest_calls_total) - int(self.stats.etag_304_total)
        remaining = int(self._rest_budget_max) - billable_calls
        if remaining <= 0:
            self._rest_budget_exhausted = True
            self._rest_budget_exhausted_reason = (
                f"GitHub REST call budget exhausted (max_rest_calls={self._rest_budget_max}, "
                f"billable={billable_calls}, 304_etags={int(self.stats.etag_304_total)})"
            )
            raise QuotaExhaustedError(endpoint=label, message=self._rest_budget_exhausted_reason, status_code=0)

    def _rest_label_for_url(self, url: str) -> str:
        """Coarse label for a REST request URL (keeps SHAs from exploding cardinality)."""
        u = str(url or "")
        try:
            path = urllib.parse.urlparse(u).path or ""
        except ValueError:
            path = ""
        s = path or u

        if "/rate_limit" in s:
            return "rate_limit"
        if s.startswith("/user/repos"):
            return "user_repos"
        if re.search(r"/repos/[^/]+/[^/]+/commits/[0-9a-f]{7,40}\b", s, flags=re.IGNORECASE):
            return "commit_detail"

        parts = [p for p in (path or "").split("/") if p]
        if len(parts) == 3 and parts[0] == "repos":
            return "repo"
        if len(parts) >= 4 and parts[0] == "repos":
            return f"repos_{parts[3]}"
        return "/".join(parts[:3]) if parts else "unknown"

    def _cache_hit(self, name: str) -> None:
        self.stats.bump(self.stats.cache_hits, name)

    def _cache_miss(self, name: str) -> None:
        self.stats.bump(self.stats.cache_misses, name)

    def _cache_write(self, name: str) -> None:
        self.stats.bump(self.stats.cache_writes_ops, name)

    def _cache_revalidated(self, name: str) -> None:
        self.stats.bump(self.stats.cache_revalidated, name)

    def _cache_stale_served(self, name: str) -> None:
        self.stats.bump(self.stats.cache_stale_served, name)

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "hits": dict(self.stats.cache_hits),
            "misses": dict(self.stats.cache_misses),
            "writes": dict(self.stats.cache_writes_ops),
            "revalidated_304": dict(self.stats.cache_revalidated),
            "stale_served": dict(self.stats.cache_stale_served),
        }

    def get_rest_call_stats(self) -> Dict[str, Any]:
        """Return per-run REST call stats for debugging."""
        return {
            "total": int(self.stats.rest_calls_total),
            "etag_304_total": int(self.stats.etag_304_total),
            "budget_max": int(self._rest_budget_max) if self._rest_budget_max is not None else None,
            "budget_exhausted": bool(self._rest_budget_exhausted),
            "by_label": dict(sorted(self.stats.rest_calls_by_label.items(), key=lambda kv: (-kv[1], kv[0]))),
            "success_total": int(self.stats.rest_success_total),
            "error_total": int(self.stats.rest_errors_total),
            "errors_by_status": dict(self.stats.rest_errors_by_status),
            "last_error": dict(self.stats.rest_last_error or {}),
            "time_total_s": float(self.stats.rest_time_total_s),
            "graphql_calls_total": int(self.stats.graphql_calls_total),
            "graphql_errors_total": int(self.stats.graphql_errors_total),
        }

    def get_actual_api_calls_text(self) -> str:
        """Return a human-readable ordered list of actual API calls."""
        return "\n".join(f"{e['seq']:>4}  [{e['kind']}] {e['text']}" for e in self.stats.get_actual_api_call_log())

    # ----------------------------------------------------------------------------------
    # Rate limit
    # ----------------------------------------------------------------------------------

    @staticmethod
    def _rate_limit_info_from_headers(headers: Any) -> Optional[Dict[str, Any]]:
        try:
            remaining_hdr = headers.get("X-RateLimit-Remaining")
            limit_hdr = headers.get("X-RateLimit-Limit")
            reset_hdr = headers.get("X-RateLimit-Reset")
            if remaining_hdr is None or limit_hdr is None:
                return None
            remaining = int(remaining_hdr)
            limit = int(limit_hdr)
            reset_epoch = int(reset_hdr) if reset_hdr is not None else None
        except (ValueError, TypeError, AttributeError):
            return None
        if reset_epoch is not None:
            reset_local = datetime.fromtimestamp(int(reset_epoch)).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
            seconds_until = int(reset_epoch) - int(time.time())
        else:
            reset_local = "unknown"
            seconds_until = 0
        return {
            "remaining": remaining,
            "limit": limit,
            "reset_epoch": reset_epoch,
            "reset_local": reset_local,
            "seconds_until_reset": seconds_until,
        }

    def get_core_rate_limit_info(self) -> Optional[Dict[str, Any]]:
        """Latest REST (core) rate limit info seen in response headers, or None."""
        return self._cached_rate_limit_info

    def get_graphql_rate_limit_info(self) -> Optional[Dict[str, Any]]:
        """Latest GraphQL (points) rate limit info, or None."""
        return self._cached_graphql_rate_limit_info

    def remaining_quota(self) -> Optional[int]:
        """Remaining REST (core) calls, or None when no response has been seen yet."""
        info = self._cached_rate_limit_info
        if not info:
            return None
        return int(info["remaining"])

    def _rate_limit_info_from_bucket(self, bucket: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(bucket, dict) or bucket.get("remaining") is None:
            return None
        return self._rate_limit_info_from_headers({
            "X-RateLimit-Remaining": bucket.get("remaining"),
            "X-RateLimit-Limit": bucket.get("limit"),
            "X-RateLimit-Reset": bucket.get("reset"),
        })

    def refresh_rate_limit_info(self) -> Optional[Dict[str, Any]]:
        """GET /rate_limit (not billable) and return the core bucket info.

        Example body:
            {"resources": {"core": {"limit": 5000, "remaining": 4990, "reset": 1769100000},
                           "graphql": {"limit": 5000, "remaining": 4999, "reset": 1769100000}}}
        """
        resp = self.rest_get("/rate_limit")
        resources = (resp.data or {}).get("resources") if isinstance(resp.data, dict) else None
        resources = resources if isinstance(resources, dict) else {}
        core = self._rate_limit_info_from_bucket(resources.get("core"))
        if core is not None:
            self._cached_rate_limit_info = core
        graphql = self._rate_limit_info_from_bucket(resources.get("graphql"))
        if graphql is not None:
            self._cached_graphql_rate_limit_info = graphql
        return self._cached_rate_limit_info

    # ----------------------------------------------------------------------------------
    # REST
    # ----------------------------------------------------------------------------------

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}{endpoint}" if endpoint.startswith('/') else f"{self.base_url}/{endpoint}"

    def _rest_get(
        self,
        url: str,
        *,
        timeout: Optional[float] = None,
        params: Optional[Dict[str, Any]] = None,
        etag: Optional[str] = None,
    ) -> requests.Response:
        """requests.get wrapper that increments per-run counters and supports ETags.

        ETag Support:
            - 304 Not Modified: content unchanged, use cached data (DOESN'T count against rate limit!)
            - 200 OK: content changed, new ETag in response.headers['ETag']

        Raises:
            QuotaExhaustedError: the per-client budget is used up (no request is made)
            UpstreamTransportError: connection error / timeout
        """
        label = self._rest_label_for_url(url)
        with self.stats.lock:
            # /rate_limit is not billable
            if label != "rate_limit":
                self._budget_maybe_consume_or_raise(label)
            self.stats.rest_calls_total += 1
            self.stats.bump(self.stats.rest_calls_by_label, label)
        url_full = str(url or "")
        if params:
            q = urllib.parse.urlencode(params, doseq=True)
            if q:
                sep = "&" if ("?" in url_full) else "?"
                url_full = f"{url_full}{sep}{q}"
        self.stats.log_actual_api_call(kind="rest", text=f"REST GET {url_full}  # {label}")
        if self._debug_rest:
            self.logger.debug("GH REST GET [%s] %s etag=%s", label, url_full, bool(etag))

        headers = dict(self.headers or {})
        if etag:
            headers['If-None-Match'] = etag

        t0_req = time.monotonic()
        try:
            resp = requests.get(url, headers=headers, params=params, timeout=timeout or self.rest_timeout_s)
        except requests.exceptions.RequestException as e:
            self.stats.record_rest_error(0, url_full, str(e))
            raise UpstreamTransportError(status_code=0, endpoint=url_full, message=f"GitHub API request failed: {e}") from e
        finally:
            self.stats.add("rest_time_total_s", max(0.0, time.monotonic() - t0_req))

        code = int(resp.status_code or 0)
        if code == 304:
            with self.stats.lock:
                self.stats.etag_304_total += 1
                self.stats.bump(self.stats.etag_304_by_label, label)
                self.stats.rest_success_total += 1
        elif code and code < 400:
            self.stats.add("rest_success_total")
        else:
            self.stats.record_rest_error(code, url_full, resp.text or "")

        if self._debug_rest:
            self.logger.debug(
                "GH REST RESP [%s] status=%s remaining=%s", label, code, resp.headers.get("X-RateLimit-Remaining")
            )

        info = self._rate_limit_info_from_headers(resp.headers)
        if info is not None:
            self._cached_rate_limit_info = info
        return resp

    def _raise_for_status(self, resp: requests.Response, endpoint: str) -> None:
        code = int(resp.status_code or 0)
        if code < 400:
            return
        body = (resp.text or "")[:300]
        if code in (403, 429) and str(resp.headers.get("X-RateLimit-Remaining", "")) == "0":
            reset_hdr = resp.headers.get("X-RateLimit-Reset")
            try:
                reset_epoch = int(reset_hdr) if reset_hdr is not None else None
            except (ValueError, TypeError):
                reset_epoch = None
            when = ""
            if reset_epoch is not None:
                when = f" Resets in {format_seconds_delta(reset_epoch - int(time.time()))}."
            raise QuotaExhaustedError(
                endpoint=endpoint,
                message=f"GitHub API rate limit exceeded for {endpoint}.{when}",
                reset_epoch=reset_epoch,
                status_code=code,
            )
        if code in (401, 403):
            raise GitHubAuthError(status_code=code, endpoint=endpoint, message=f"GitHub API returned {code}: {body}")
        if code == 404:
            raise GitHubNotFoundError(status_code=code, endpoint=endpoint, message=f"Not found: {endpoint}")
        if code >= 500:
            raise UpstreamTransportError(status_code=code, endpoint=endpoint, message=f"GitHub API returned {code}: {body}")
        raise UpstreamQueryError(status_code=code, endpoint=endpoint, message=f"GitHub API returned {code}: {body}")

    def rest_get(
        self,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        etag: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RestResponse:
        """GET a REST endpoint, optionally conditional on `etag`.

        Example:
            resp = client.rest_get("/repos/owner/repo")
            resp.data   -> {"full_name": "owner/repo", "pushed_at": "...", ...}
            resp.etag   -> 'W/"6f1c..."'
        """
        resp = self._rest_get(self._url(endpoint), timeout=timeout, params=params, etag=etag)
        if int(resp.status_code or 0) == 304:
            return RestResponse(status_code=304, data=None, etag=resp.headers.get("ETag") or etag)
        self._raise_for_status(resp, endpoint)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamTransportError(
                status_code=int(resp.status_code or 0), endpoint=endpoint, message=f"Invalid JSON from {endpoint}: {e}"
            ) from e
        next_url = ((getattr(resp, "links", None) or {}).get("next") or {}).get("url")
        return RestResponse(
            status_code=int(resp.status_code or 0), data=data, etag=resp.headers.get("ETag"), next_url=next_url
        )

    # ----------------------------------------------------------------------------------
    # GraphQL
    # ----------------------------------------------------------------------------------

    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        """POST /graphql and return `data`.

        Raises UpstreamQueryError when the response carries `errors`.
        """
        if not self.token:
            raise GitHubAuthError(status_code=401, endpoint="graphql", message="GitHub GraphQL API requires a token")
        self.stats.add("graphql_calls_total")
        m = re.search(r"\b(query|mutation)\s+(\w+)", query)
        op = m.group(2) if m else "anonymous"
        self.stats.log_actual_api_call(kind="graphql", text=f"GraphQL {op} {json.dumps(variables or {}, sort_keys=True)}")

        t0 = time.monotonic()
        try:
            resp = requests.post(
                f"{self.base_url}/graphql",
                headers=dict(self.headers),
                json={"query": query, "variables": variables or {}},
                timeout=timeout or self.graphql_timeout_s,
            )
        except requests.exceptions.RequestException as e:
            self.stats.add("graphql_errors_total")
            raise UpstreamTransportError(status_code=0, endpoint="graphql", message=f"GitHub GraphQL request failed: {e}") from e
        finally:
            self.stats.add("graphql_time_total_s", max(0.0, time.monotonic() - t0))

        info = self._rate_limit_info_from_headers(resp.headers)
        if info is not None:
            self._cached_graphql_rate_limit_info = info

        try:
            self._raise_for_status(resp, "graphql")
            try:
                body = resp.json()
            except ValueError as e:
                raise UpstreamTransportError(
                    status_code=int(resp.status_code or 0), endpoint="graphql", message=f"Invalid JSON from GraphQL: {e}"
                ) from e
            errors = body.get("errors") if isinstance(body, dict) else None
            if errors:
                msgs = "; ".join(str((e or {}).get("message") or e) for e in errors[:3])
                if any(str((e or {}).get("type") or "") == "RATE_LIMITED" for e in errors):
                    raise QuotaExhaustedError(endpoint="graphql", message=f"GraphQL rate limited: {msgs}")
                if any(str((e or {}).get("type") or "") == "NOT_FOUND" for e in errors):
                    raise GitHubNotFoundError(status_code=404, endpoint="graphql", message=msgs)
                raise UpstreamQueryError(status_code=int(resp.status_code or 200), endpoint="graphql", message=msgs)
        except GitHubAPIError:
            self.stats.add("graphql_errors_total")
            raise
        return body.get("data") or {}


__all__ = [
    "GitHubAPIClient",
    "GitHubAPIStats",
    "RestResponse",
    "format_seconds_delta",
]
