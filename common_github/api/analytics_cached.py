"""Cross-repository analytics over a set of tracked repositories.

Aggregates (one cache entry each):

  analytics:{scope}:{period}:overview          totals + completion rate + top performer
  analytics:{scope}:{period}:top-contributors  per-user totals ranked by score
  analytics:{scope}:{period}:languages         language -> file count, summed over users
  analytics:{scope}:last-N-days-{date}:daily-trends
                                               commits + completed issues per day

`scope` is "repos-<sha1 prefix>" of the sorted repository list, so each tracked set owns
its own entries. Overview, contributors and languages are built from the per-repo cached
resources (issue stats, commit stats, language stats) and therefore reuse their ETags.
Daily trends scan commits and labeled events for the trailing window directly.

  score     = completed * 2 + commits
  completed = items whose status is local_done, dev_deployed or dev_checked

A repository failing with a transport or query error is logged and left out of the
aggregate (listed in "failed_repos"); QuotaExhaustedError propagates.

TTL:
  15m, daily trends 30m.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from cache.registry import CacheRegistry
from common import (
    ANALYTICS_DEFAULT_PERIOD,
    DAILY_TRENDS_DAYS,
    DEFAULT_DAILY_TRENDS_TTL_S,
    ISSUES_MAX_PAGES,
    ISSUES_PAGE_SIZE,
    TOP_CONTRIBUTORS_LIMIT,
)
from common_types import CacheDomain, IssueStatus

from ..cache_ttl_utils import make_cache_key, ttl_for
from ..exceptions import UpstreamQueryError, UpstreamTransportError
from ..github_types import LabelEventKind, WorkItem
from ..periods import Period, resolve_period
from ..status_labels import StatusLabelTable, derive_status, status_for_label
from .base_cached import CachedResourceBase, UpstreamResult, period_to_dict
from .commit_stats_cached import CommitStatsCached, list_period_commits
from .issue_stats_cached import IssueStatsCached, scan_work_items
from .language_stats_cached import LanguageStatsCached

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)

OVERVIEW = "overview"
TOP_CONTRIBUTORS = "top-contributors"
LANGUAGES = "languages"
DAILY_TRENDS = "daily-trends"

COMPLETED_STATUSES = frozenset({IssueStatus.LOCAL_DONE, IssueStatus.DEV_DEPLOYED, IssueStatus.DEV_CHECKED})

DAILY_TRENDS_QUERY = """
query GetCompletedIssues($owner: String!, $name: String!, $first: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    issues(first: $first, after: $cursor, orderBy: {field: UPDATED_AT, direction: DESC}) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id number title url state createdAt updatedAt closedAt
        labels(first: 20) { nodes { name } }
        timelineItems(last: 100, itemTypes: [LABELED_EVENT]) {
          nodes {
            __typename
            ... on LabeledEvent { createdAt label { name } }
          }
        }
      }
    }
  }
}
"""


def repo_scope(repos: Iterable[str]) -> str:
    """Stable cache-key segment for a set of repositories."""
    joined = ",".join(sorted({str(r).strip().lower() for r in repos if str(r).strip()}))
    return "repos-" + hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]


@dataclass
class ContributorSummary:
    username: str
    issues: int = 0
    commits: int = 0
    completed: int = 0
    assigned: int = 0
    in_progress: int = 0
    review: int = 0
    dev_deployed: int = 0
    dev_checked: int = 0

    @property
    def score(self) -> int:
        return self.completed * 2 + self.commits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "issues": self.issues,
            "commits": self.commits,
            "completed": self.completed,
            "assigned": self.assigned,
            "in_progress": self.in_progress,
            "review": self.review,
            "dev_deployed": self.dev_deployed,
            "dev_checked": self.dev_checked,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ContributorSummary":
        return cls(
            username=str(d["username"]),
            **{k: int(d.get(k) or 0) for k in (
                "issues", "commits", "completed", "assigned", "in_progress", "review", "dev_deployed", "dev_checked",
            )},
        )


@dataclass(frozen=True)
class AnalyticsOverview:
    period: str
    active_contributors: int
    total_issues_completed: int
    total_commits: int
    average_completion_rate: int  # percent of period assignments that are completed
    top_performer: Optional[str]
    failed_repos: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "active_contributors": self.active_contributors,
            "total_issues_completed": self.total_issues_completed,
            "total_commits": self.total_commits,
            "average_completion_rate": self.average_completion_rate,
            "top_performer": self.top_performer,
            "failed_repos": list(self.failed_repos),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnalyticsOverview":
        return cls(
            period=str(d.get("period") or ""),
            active_contributors=int(d.get("active_contributors") or 0),
            total_issues_completed=int(d.get("total_issues_completed") or 0),
            total_commits=int(d.get("total_commits") or 0),
            average_completion_rate=int(d.get("average_completion_rate") or 0),
            top_performer=d.get("top_performer") or None,
            failed_repos=tuple(d.get("failed_repos") or ()),
        )


@dataclass(frozen=True)
class LanguageTotal:
    language: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"language": self.language, "count": self.count}


@dataclass(frozen=True)
class DailyActivity:
    date: str  # YYYY-MM-DD in the period's timezone
    commits: int
    issues: int

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "commits": self.commits, "issues": self.issues}


def rank_contributors(users: Iterable[ContributorSummary]) -> List[ContributorSummary]:
    return sorted(users, key=lambda u: (-u.score, u.username.lower()))


def completed_at(item: WorkItem, period: Period, table: Optional[StatusLabelTable] = None) -> Optional[datetime]:
    """When a completed item reached completion inside `period`, or None.

    Uses the latest in-window label event that maps to a completed status, falling back to
    updated_at for items whose labeling history is not visible.
    """
    if derive_status(item.labels, table) not in COMPLETED_STATUSES:
        return None
    latest = None
    for ev in item.label_events:
        if ev.kind is not LabelEventKind.ADDED or not period.contains(ev.timestamp):
            continue
        if status_for_label(ev.label, table) in COMPLETED_STATUSES and (latest is None or ev.timestamp > latest):
            latest = ev.timestamp
    if latest is not None:
        return latest
    return item.updated_at if period.contains(item.updated_at) else None


class RepoAnalyticsCached(CachedResourceBase[Dict[str, Any]]):
    """Aggregates across repositories; one cached payload per (repo set, period, kind)."""

    def __init__(
        self,
        api: "GitHubAPIClient",
        registry: CacheRegistry,
        *,
        issues: IssueStatsCached,
        commits: CommitStatsCached,
        languages: LanguageStatsCached,
        table: Optional[StatusLabelTable] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(api, registry, clock=clock)
        self.issues = issues
        self.commits = commits
        self.languages = languages
        self.table = table

    @property
    def cache_name(self) -> str:
        return "analytics"

    def cache_key(self, *, kind: str, repos: Tuple[str, ...], period: Period, **kwargs: Any) -> str:
        return make_cache_key(CacheDomain.ANALYTICS, repo_scope(repos), period.name, kind)

    def ttl_s(self, *, kind: str, **kwargs: Any) -> int:
        if kind == DAILY_TRENDS:
            return DEFAULT_DAILY_TRENDS_TTL_S
        return ttl_for(CacheDomain.ANALYTICS)

    def fetch_upstream(self, *, etag: Optional[str], kind: str, repos: Tuple[str, ...], period: Period, **kwargs: Any) -> UpstreamResult:
        builders = {
            OVERVIEW: self._build_overview,
            TOP_CONTRIBUTORS: self._build_contributors,
            LANGUAGES: self._build_languages,
            DAILY_TRENDS: self._build_daily_trends,
        }
        t0 = time.monotonic()
        payload = builders[kind](repos, period)
        _logger.info(
            "analytics %s over %d repo(s) for %s built in %.1fs",
            kind, len(repos), period.name, time.monotonic() - t0,
        )
        return UpstreamResult.changed(payload)

    # -- inputs --------------------------------------------------------------

    def _per_repo(self, repos: Sequence[str], fetch: Callable[[str], Any], what: str) -> Tuple[List[Any], List[str]]:
        results: List[Any] = []
        failed: List[str] = []
        for repo in repos:
            try:
                results.append(fetch(repo))
            except (UpstreamTransportError, UpstreamQueryError) as e:
                _logger.warning("analytics: %s for %s failed, leaving it out: %s", what, repo, e)
                failed.append(repo)
        return results, failed

    def _contributors(self, repos: Sequence[str], period: Period) -> Tuple[List[ContributorSummary], List[str]]:
        users: Dict[str, ContributorSummary] = {}

        def _user(name: str) -> ContributorSummary:
            return users.setdefault(name.strip().lower(), ContributorSummary(username=name.strip()))

        issue_rows, failed_issues = self._per_repo(
            repos, lambda r: self.issues.get(repo=r, period=period), "issue stats"
        )
        for rows in issue_rows:
            for st in rows:
                u = _user(st.username)
                u.issues += st.total
                u.completed += sum(st.count(s) for s in COMPLETED_STATUSES)
                u.assigned += st.count(IssueStatus.ASSIGNED)
                u.in_progress += st.count(IssueStatus.IN_PROGRESS)
                u.review += st.count(IssueStatus.REVIEW)
                u.dev_deployed += st.count(IssueStatus.DEV_DEPLOYED)
                u.dev_checked += st.count(IssueStatus.DEV_CHECKED)

        commit_rows, failed_commits = self._per_repo(
            repos, lambda r: self.commits.get(repo=r, period=period), "commit stats"
        )
        for rows in commit_rows:
            for c in rows:
                _user(c.username).commits += c.commits

        return rank_contributors(users.values()), sorted(set(failed_issues) | set(failed_commits))

    # -- builders ------------------------------------------------------------

    def _build_overview(self, repos: Sequence[str], period: Period) -> Dict[str, Any]:
        ranked, failed = self._contributors(repos, period)
        assigned = sum(u.issues for u in ranked)
        completed = sum(u.completed for u in ranked)
        overview = AnalyticsOverview(
            period=period.name,
            active_contributors=len(ranked),
            total_issues_completed=completed,
            total_commits=sum(u.commits for u in ranked),
            average_completion_rate=round(completed * 100 / assigned) if assigned else 0,
            top_performer=ranked[0].username if ranked else None,
            failed_repos=tuple(failed),
        )
        return overview.to_dict()

    def _build_contributors(self, repos: Sequence[str], period: Period) -> Dict[str, Any]:
        ranked, failed = self._contributors(repos, period)
        return {
            "period": period_to_dict(period),
            "contributors": [u.to_dict() for u in ranked],
            "failed_repos": failed,
        }

    def _build_languages(self, repos: Sequence[str], period: Period) -> Dict[str, Any]:
        totals: Dict[str, int] = {}
        rows, failed = self._per_repo(repos, lambda r: self.languages.get(repo=r, period=period), "language stats")
        for users in rows:
            for u in users:
                for share in u.top_languages:
                    totals[share.language] = totals.get(share.language, 0) + int(share.count)
        ordered = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))
        return {
            "period": period_to_dict(period),
            "languages": [LanguageTotal(language=k, count=v).to_dict() for k, v in ordered],
            "failed_repos": failed,
        }

    def _build_daily_trends(self, repos: Sequence[str], period: Period) -> Dict[str, Any]:
        tz = period.start.tzinfo
        days: Dict[str, Dict[str, int]] = {}
        d = period.start.date()
        while d <= period.end.date():
            days[d.isoformat()] = {"commits": 0, "issues": 0}
            d += timedelta(days=1)

        def _bump(ts: datetime, field: str) -> None:
            bucket = days.get(ts.astimezone(tz).date().isoformat())
            if bucket is not None:
                bucket[field] += 1

        def _repo_counts(repo: str) -> None:
            listed = list_period_commits(self.api, repo, period)
            for c in (listed[0] if listed else []):
                if c.committed_at is not None and period.contains(c.committed_at):
                    _bump(c.committed_at, "commits")
            scan = scan_work_items(
                self.api,
                repo,
                query=DAILY_TRENDS_QUERY,
                cutoff=period.start,
                page_size=ISSUES_PAGE_SIZE,
                max_pages=ISSUES_MAX_PAGES,
            )
            for item in scan.items:
                done = completed_at(item, period, self.table)
                if done is not None:
                    _bump(done, "issues")

        _, failed = self._per_repo(repos, _repo_counts, "daily trends")
        return {
            "period": period_to_dict(period),
            "days": [DailyActivity(date=k, **v).to_dict() for k, v in sorted(days.items())],
            "failed_repos": failed,
        }

    # -- public --------------------------------------------------------------

    def _repos(self, repos: Iterable[str]) -> Tuple[str, ...]:
        out = tuple(sorted({str(r).strip() for r in repos if str(r).strip()}))
        if not out:
            raise ValueError("no repositories to aggregate")
        return out

    def _period(self, period: Optional[str]) -> Period:
        return self.issues.resolve(period or ANALYTICS_DEFAULT_PERIOD)

    def trailing_days(self, days: int) -> Period:
        """The last `days` whole days, today included."""
        if int(days) < 1:
            raise ValueError(f"days must be >= 1, got {days}")
        today = resolve_period("today", now=self.issues.now())
        return Period(
            name=f"last-{int(days)}-days-{today.start.date().isoformat()}",
            start=today.start - timedelta(days=int(days) - 1),
            end=today.end,
        )

    def overview(self, repos: Iterable[str], period: Optional[str] = None, *, force: bool = False) -> AnalyticsOverview:
        payload = self.get(force=force, kind=OVERVIEW, repos=self._repos(repos), period=self._period(period))
        return AnalyticsOverview.from_dict(payload)

    def top_contributors(
        self,
        repos: Iterable[str],
        period: Optional[str] = None,
        *,
        limit: int = TOP_CONTRIBUTORS_LIMIT,
        force: bool = False,
    ) -> List[ContributorSummary]:
        payload = self.get(force=force, kind=TOP_CONTRIBUTORS, repos=self._repos(repos), period=self._period(period))
        rows = [ContributorSummary.from_dict(u) for u in payload.get("contributors") or []]
        return rows[: max(0, int(limit))]

    def language_distribution(self, repos: Iterable[str], period: Optional[str] = None, *, force: bool = False) -> List[LanguageTotal]:
        payload = self.get(force=force, kind=LANGUAGES, repos=self._repos(repos), period=self._period(period))
        return [LanguageTotal(language=str(x["language"]), count=int(x["count"])) for x in payload.get("languages") or []]

    def daily_trends(self, repos: Iterable[str], days: int = DAILY_TRENDS_DAYS, *, force: bool = False) -> List[DailyActivity]:
        payload = self.get(force=force, kind=DAILY_TRENDS, repos=self._repos(repos), period=self.trailing_days(days))
        return [DailyActivity(date=str(x["date"]), commits=int(x["commits"]), issues=int(x["issues"])) for x in payload.get("days") or []]
