#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Common shared enums that must be used by both:
- `cache/*` (storage layer)
- `common_github/*` (API/derivation layer)

This module MUST NOT import `common_github` or `cache` to avoid cycles.
"""

from __future__ import annotations

from enum import Enum


class IssueStatus(str, Enum):
    """Canonical work-item status derived from labels.

    Declaration order is priority order (highest first); ASSIGNED is the default.
    """

    DEV_CHECKED = "dev_checked"
    DEV_DEPLOYED = "dev_deployed"
    LOCAL_DONE = "local_done"
    TIME_UP = "time_up"
    REVIEW = "review"
    IN_PROGRESS = "in_progress"
    ASSIGNED = "assigned"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def display_name(self) -> str:
        return _DISPLAY[self]


_TERMINAL = frozenset({
    IssueStatus.LOCAL_DONE,
    IssueStatus.DEV_DEPLOYED,
    IssueStatus.DEV_CHECKED,
    IssueStatus.TIME_UP,
})

_DISPLAY = {
    IssueStatus.DEV_CHECKED: "Dev Checked",
    IssueStatus.DEV_DEPLOYED: "Dev Deployed",
    IssueStatus.LOCAL_DONE: "Local Done",
    IssueStatus.TIME_UP: "Time Up",
    IssueStatus.REVIEW: "Review",
    IssueStatus.IN_PROGRESS: "In Progress",
    IssueStatus.ASSIGNED: "Assigned",
}


class CacheDomain(str, Enum):
    """First segment of every cache key."""

    ISSUES = "issues"
    COMMITS = "commits"
    LANGUAGES = "languages"
    TIMELINE = "timeline"
    REPO_META = "repo-meta"
    REPO_CHANGE_STATE = "repo-change-state"
    SEARCH = "search"
    ANALYTICS = "analytics"


# Domains whose entries are scoped to a period and cleared on repository events.
PERIOD_SCOPED_DOMAINS = (
    CacheDomain.ISSUES,
    CacheDomain.COMMITS,
    CacheDomain.TIMELINE,
    CacheDomain.LANGUAGES,
)
