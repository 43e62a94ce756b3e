"""One place that wires the cached GitHub resources to a client + cache registry.

    registry = CacheRegistry.create(settings.cache_path)
    svc = ActivityService(GitHubAPIClient(), registry, table=StatusLabelTable.from_settings(...))
    svc.issue_stats("owner/repo", "today")
"""

from __future__ import annotations

import logging
import time
from datetime import tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from cache.registry import CacheRegistry
from common import DAILY_TRENDS_DAYS, HOT_PERIODS, TOP_CONTRIBUTORS_LIMIT

from .api.analytics_cached import AnalyticsOverview, ContributorSummary, DailyActivity, LanguageTotal, RepoAnalyticsCached
from .api.commit_stats_cached import CommitStatsCached, UserCommitCount
from .api.issue_stats_cached import IssueStatsCached, PeriodUserStats, SyncMetadata
from .api.issue_timeline_cached import IssueTimelineCached
from .api.language_stats_cached import LanguageStatsCached, UserLanguages
from .api.repo_changes_cached import RepoChangeDetector, RepoChangeResult
from .api.repo_meta_cached import RepoInfoCached, RepoSearchCached
from .github_types import RepoInfo, RepoSummary
from .status_labels import StatusLabelTable

if TYPE_CHECKING:  # pragma: no cover
    from . import GitHubAPIClient

_logger = logging.getLogger(__name__)


class ActivityService:
    def __init__(
        self,
        api: "GitHubAPIClient",
        registry: CacheRegistry,
        *,
        table: Optional[StatusLabelTable] = None,
        clock: Callable[[], float] = time.time,
        tz: Optional[tzinfo] = None,
    ):
        self.api = api
        self.registry = registry
        self.issues = IssueStatsCached(api, registry, table=table, clock=clock, tz=tz)
        self.commits = CommitStatsCached(api, registry, clock=clock, tz=tz)
        self.languages = LanguageStatsCached(api, registry, clock=clock, tz=tz)
        self.timeline = IssueTimelineCached(api, registry, table=table, clock=clock, tz=tz)
        self.repo_info = RepoInfoCached(api, registry, clock=clock)
        self.repo_search = RepoSearchCached(api, registry, clock=clock)
        self.changes = RepoChangeDetector(api, registry, clock=clock)
        self.analytics = RepoAnalyticsCached(
            api, registry, issues=self.issues, commits=self.commits, languages=self.languages, table=table, clock=clock,
        )

    def issue_stats(self, repo: str, period: Optional[str] = None, explicit_date: Any = None, *, force: bool = False) -> List[PeriodUserStats]:
        return self.issues.sync_period(repo, period, explicit_date, force=force)

    def commit_stats(self, repo: str, period: Optional[str] = None, explicit_date: Any = None, *, force: bool = False) -> List[UserCommitCount]:
        return self.commits.get_for_period(repo, period, explicit_date, force=force)

    def language_stats(self, repo: str, period: Optional[str] = None, explicit_date: Any = None, *, force: bool = False) -> List[UserLanguages]:
        return self.languages.get_for_period(repo, period, explicit_date, force=force)

    def issue_timeline(self, repo: str, period: Optional[str] = None, explicit_date: Any = None, *, force: bool = False) -> List[Dict[str, Any]]:
        return self.timeline.get_for_period(repo, period, explicit_date, force=force)

    def get_repo_info(self, repo: str) -> Optional[RepoInfo]:
        return self.repo_info.get_repo_info(repo)

    def search_repositories(self, query: str) -> List[RepoSummary]:
        return self.repo_search.search(query)

    def check_repo_changes(self, repo: str) -> RepoChangeResult:
        return self.changes.check_repo_changes(repo)

    def sync_metadata(self, repo: str) -> Optional[SyncMetadata]:
        return self.issues.sync_metadata(repo)

    # -- cross-repository analytics -------------------------------------------

    def analytics_overview(self, repos: Iterable[str], period: Optional[str] = None, *, force: bool = False) -> AnalyticsOverview:
        return self.analytics.overview(repos, period, force=force)

    def top_contributors(
        self,
        repos: Iterable[str],
        period: Optional[str] = None,
        *,
        limit: int = TOP_CONTRIBUTORS_LIMIT,
        force: bool = False,
    ) -> List[ContributorSummary]:
        return self.analytics.top_contributors(repos, period, limit=limit, force=force)

    def language_distribution(self, repos: Iterable[str], period: Optional[str] = None, *, force: bool = False) -> List[LanguageTotal]:
        return self.analytics.language_distribution(repos, period, force=force)

    def daily_trends(self, repos: Iterable[str], days: int = DAILY_TRENDS_DAYS, *, force: bool = False) -> List[DailyActivity]:
        return self.analytics.daily_trends(repos, days, force=force)

    def refresh_repo(self, repo: str) -> bool:
        """Change check, then forced conditional refresh of the hot periods.

        Returns True when the repository changed (and was refreshed).
        """
        result = self.check_repo_changes(repo)
        if not result.changed:
            _logger.debug("%s: unchanged, skipping refresh", repo)
            return False
        for period in HOT_PERIODS:
            self.issue_stats(repo, period, force=True)
            self.commit_stats(repo, period, force=True)
        _logger.info("%s: refreshed %s", repo, ", ".join(HOT_PERIODS))
        return True
