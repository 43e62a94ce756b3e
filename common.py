# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
gh-activity-cache shared constants and settings.

Cache policy constants, cache/config location resolution and the optional YAML
settings file used by the scheduler and CLI.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# Global logger for the module
_logger = logging.getLogger(__name__)

#
# Cache policy constants (single source of truth)
#
# These are intentionally defined at module level so call sites don't duplicate
# literals (30m / 24h / 7d / etc) across modules.
#
DEFAULT_HOT_PERIOD_TTL_S: int = 1800
# ^ TTL for period-scoped stats whose window still includes "now" (today, this-week).
DEFAULT_CLOSED_PERIOD_TTL_S: int = 24 * 3600
# ^ TTL for period-scoped stats of windows that are over or mostly over
#   (yesterday, last-week, this-month, month-MM-YYYY, explicit dates).
DEFAULT_REPO_META_TTL_S: int = 300
# ^ TTL for GET /repos/{owner}/{repo} metadata.
DEFAULT_SEARCH_LISTING_TTL_S: int = 120
# ^ TTL for the /user/repos listing used by repository search.
DEFAULT_CHANGE_STATE_TTL_S: int = 7 * 24 * 3600
# ^ TTL for stored change-detection state and SyncMetadata.
DEFAULT_STALE_RETENTION_S: int = 7 * 24 * 3600
# ^ How long an expired entry is kept around for ETag revalidation / stale serving.
FULL_REFRESH_INTERVAL_S: int = 24 * 3600
# ^ Max age of the last full sync before the next sync ignores the stored ETag.
DEFAULT_ANALYTICS_TTL_S: int = 900
# ^ TTL for cross-repository aggregates (overview, contributors, languages).
DEFAULT_DAILY_TRENDS_TTL_S: int = 1800

ASSIGNMENT_LOOKBACK_DAYS: int = 7
# ^ Items not updated since (period start - lookback) cannot hold a recent assignment.
ISSUES_PAGE_SIZE: int = 100
ISSUES_MAX_PAGES: int = 10
TIMELINE_PAGE_SIZE: int = 50
TIMELINE_MAX_PAGES: int = 15
COMMITS_MAX_PAGES: int = 10
LANGUAGES_MAX_COMMITS: int = 15
# ^ Commit-detail calls per language scan (each one is a billable REST call).
DAILY_TRENDS_DAYS: int = 10
TOP_CONTRIBUTORS_LIMIT: int = 10
ANALYTICS_DEFAULT_PERIOD = "this-month"

DEFAULT_MIN_REMAINING_QUOTA: int = 300
# ^ Scheduled cycles are skipped while X-RateLimit-Remaining is below this.
DEFAULT_INTER_REPO_DELAY_S: float = 2.0
DEFAULT_REFRESH_INTERVAL_S: float = 15 * 60
DEFAULT_REST_TIMEOUT_S: int = 10
DEFAULT_GRAPHQL_TIMEOUT_S: int = 30

HOT_PERIODS = ("today", "this-week")


# ======================================================================================
# Cache location policy
#
# All persistent caches live under:
#   - $GH_ACTIVITY_CACHE_DIR        (explicit override), else
#   - ~/.cache/gh-activity          (default)
# ======================================================================================

def cache_dir() -> Path:
    """Return the cache directory.

    Resolution order:
    - GH_ACTIVITY_CACHE_DIR (explicit override)
    - ~/.cache/gh-activity
    """
    override = os.environ.get("GH_ACTIVITY_CACHE_DIR")
    if override:
        return Path(override).expanduser()

    return Path.home() / ".cache" / "gh-activity"


def default_config_path() -> Path:
    override = os.environ.get("GH_ACTIVITY_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "gh-activity" / "config.yml"


@dataclass
class Settings:
    """Runtime settings (all optional; defaults come from the constants above)."""

    tracked_repos: List[str] = field(default_factory=list)
    status_labels: Dict[str, str] = field(default_factory=dict)
    min_remaining_quota: int = DEFAULT_MIN_REMAINING_QUOTA
    inter_repo_delay_s: float = DEFAULT_INTER_REPO_DELAY_S
    refresh_interval_s: float = DEFAULT_REFRESH_INTERVAL_S
    max_rest_calls: Optional[int] = None
    timezone: Optional[str] = None
    webhook_secret: Optional[str] = None
    cache_file: Optional[Path] = None

    @property
    def cache_path(self) -> Path:
        return self.cache_file or (cache_dir() / "activity_cache.json")


def _settings_from_dict(raw: Dict[str, Any]) -> Settings:
    s = Settings()
    repos = raw.get("tracked_repos") or []
    if not isinstance(repos, list):
        raise ValueError("tracked_repos must be a list of owner/repo strings")
    s.tracked_repos = [str(r).strip() for r in repos if str(r).strip()]
    for r in s.tracked_repos:
        if r.count("/") != 1:
            raise ValueError(f"invalid repository name in tracked_repos: {r!r}")

    labels = raw.get("status_labels") or {}
    if not isinstance(labels, dict):
        raise ValueError("status_labels must be a mapping of status -> label name")
    s.status_labels = {str(k): str(v) for k, v in labels.items()}

    if raw.get("min_remaining_quota") is not None:
        s.min_remaining_quota = int(raw["min_remaining_quota"])
    if raw.get("inter_repo_delay_s") is not None:
        s.inter_repo_delay_s = float(raw["inter_repo_delay_s"])
    if raw.get("refresh_interval_s") is not None:
        s.refresh_interval_s = float(raw["refresh_interval_s"])
    if raw.get("max_rest_calls") is not None:
        s.max_rest_calls = int(raw["max_rest_calls"])
    if raw.get("timezone"):
        s.timezone = str(raw["timezone"])
    if raw.get("webhook_secret"):
        s.webhook_secret = str(raw["webhook_secret"])
    if raw.get("cache_file"):
        s.cache_file = Path(str(raw["cache_file"])).expanduser()
    return s


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from YAML (missing file -> defaults).

    Example config.yml:
        tracked_repos:
          - owner/repo
        min_remaining_quota: 300
        status_labels:
          in_progress: "2:in progress"
        timezone: Asia/Ho_Chi_Minh
    """
    p = Path(path) if path is not None else default_config_path()
    raw: Dict[str, Any] = {}
    if p.exists():
        with open(p, "r") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"{p}: top-level YAML must be a mapping")
        raw = loaded or {}
        _logger.debug("Loaded settings from %s", p)
    settings = _settings_from_dict(raw)
    if not settings.webhook_secret:
        settings.webhook_secret = os.environ.get("GITHUB_WEBHOOK_SECRET") or None
    return settings
