# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Status history per (open issue, assignee) for issues assigned in a period.

Resources:
  head:   GET /repos/{owner}/{repo}/issues?state=open&sort=updated&direction=desc&per_page=1
  scan:   GraphQL repository.issues(states: OPEN, first: 50, orderBy: UPDATED_AT DESC) with the
          last 200 LABELED/UNLABELED/ASSIGNED timeline events per issue

Example cached payload:
  {
    "period": {...},
    "users": [
      {
        "username": "alice",
        "total_weight": 5.0,          # open items whose current status is not terminal
        "issues": [
          {"number": 42, "title": "Fix login P:5", "url": "...", "state": "open", "weight": 5.0,
           "current_status": "in_progress",
           "status_history": [
             {"status": "assigned", "start": "...", "end": "...", "duration_ms": 3600000},
             {"status": "in_progress", "start": "...", "end": "...", "duration_ms": 7200000}
           ]}
        ]
      }
    ]
  }

TTL:
  today / this-week 30m, everything else 24h.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from common import ASSIGNMENT_LOOKBACK_DAYS, TIMELINE_MAX_PAGES, TIMELINE_PAGE_SIZE
from common_types import CacheDomain, IssueStatus

from ..github_types import WorkItem
from ..periods import Period
from ..status_labels import StatusLabelTable
from ..timeline import StatusInterval, replay
from ..weights import item_weight
from .base_cached import PeriodCachedResource, UpstreamResult, period_to_dict
from .issue_stats_cached import scan_work_items

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)

TIMELINE_QUERY = """
query GetIssueTimeline($owner: String!, $name: String!, $first: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    issues(first: $first, after: $cursor, states: [OPEN], orderBy: {field: UPDATED_AT, direction: DESC}) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id number title body url state createdAt updatedAt closedAt
        labels(first: 20) { nodes { name } }
        assignees(first: 5) { nodes { login } }
        timelineItems(last: 200, itemTypes: [LABELED_EVENT, UNLABELED_EVENT, ASSIGNED_EVENT]) {
          nodes {
            __typename
            ... on LabeledEvent { createdAt label { name } }
            ... on UnlabeledEvent { createdAt label { name } }
            ... on AssignedEvent { createdAt assignee { ... on User { login } } }
          }
        }
      }
    }
  }
}
"""


@dataclass(frozen=True)
class AssigneeTimeline:
    """One (item, assignee) pair with its replayed status history."""

    number: int
    title: str
    url: str
    state: str
    weight: float
    current_status: IssueStatus
    status_history: Tuple[StatusInterval, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "url": self.url,
            "state": self.state,
            "weight": self.weight,
            "current_status": self.current_status.value,
            "status_history": [iv.to_dict() for iv in self.status_history],
        }


def build_user_timelines(
    items: List[WorkItem],
    period: Period,
    *,
    now,
    table: Optional[StatusLabelTable] = None,
) -> List[Dict[str, Any]]:
    """Group replayed timelines per assignee (only assignments inside `period`)."""
    by_user: Dict[str, Dict[str, Any]] = {}
    for item in items:
        latest = item.latest_assignments()
        history: Optional[List[StatusInterval]] = None
        for username in sorted(item.assignees):
            assigned_at = latest.get(username)
            if assigned_at is None or not period.contains(assigned_at):
                continue
            if history is None:
                closed_at = (item.closed_at or item.updated_at) if item.is_closed else None
                history = replay(
                    item.created_at,
                    item.label_events,
                    item.labels,
                    closed_at=closed_at,
                    updated_at=item.updated_at,
                    now=now,
                    table=table,
                )
            entry = AssigneeTimeline(
                number=item.number,
                title=item.title,
                url=item.url,
                state=item.state,
                weight=item_weight(item.title, item.body, item.labels),
                current_status=history[-1].status,
                status_history=tuple(history),
            )
            user = by_user.setdefault(username, {"username": username, "total_weight": 0.0, "issues": []})
            user["issues"].append(entry.to_dict())
            if not item.is_closed and not entry.current_status.is_terminal:
                user["total_weight"] += entry.weight
    return sorted(by_user.values(), key=lambda u: (-len(u["issues"]), u["username"]))


class IssueTimelineCached(PeriodCachedResource[List[Dict[str, Any]]]):
    domain = CacheDomain.TIMELINE

    def __init__(self, api: "GitHubAPIClient", registry, *, table: Optional[StatusLabelTable] = None, **kwargs: Any):
        super().__init__(api, registry, **kwargs)
        self.table = table

    @property
    def cache_name(self) -> str:
        return "issue_timeline"

    def value_from_payload(self, payload: Any) -> List[Dict[str, Any]]:
        return list((payload or {}).get("users") or [])

    def fetch_upstream(self, *, etag: Optional[str], repo: str, period: Period, **kwargs: Any) -> UpstreamResult:
        head = self.api.rest_get(
            f"/repos/{repo}/issues",
            params={"state": "open", "sort": "updated", "direction": "desc", "per_page": 1},
            etag=etag,
        )
        if head.not_modified:
            return UpstreamResult.unchanged(etag=head.etag)

        scan = scan_work_items(
            self.api,
            repo,
            query=TIMELINE_QUERY,
            cutoff=period.cutoff(ASSIGNMENT_LOOKBACK_DAYS),
            page_size=TIMELINE_PAGE_SIZE,
            max_pages=TIMELINE_MAX_PAGES,
        )
        users = build_user_timelines(scan.items, period, now=self.now(), table=self.table)
        _logger.info("%s %s: timelines for %d user(s) from %d open items", repo, period.name, len(users), len(scan.items))
        return UpstreamResult.changed({"period": period_to_dict(period), "users": users}, etag=head.etag)
