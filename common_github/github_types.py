"""Typed GitHub response structures and the conversion boundary.

Every network call in this package converts its JSON into these frozen
dataclasses right after the response is received; derivation code
(status/timeline/weights/sync) never touches raw upstream dicts.

Example GraphQL issue node (fields used, truncated):
  {
    "id": "I_kwDOA...", "number": 42, "state": "OPEN",
    "title": "Fix login P:3", "body": "...",
    "createdAt": "2026-01-20T10:00:00Z", "updatedAt": "2026-01-24T10:30:00Z",
    "closedAt": null,
    "labels": {"nodes": [{"name": "2:in progress"}]},
    "assignees": {"nodes": [{"login": "alice"}]},
    "timelineItems": {"nodes": [
      {"__typename": "AssignedEvent", "createdAt": "...", "assignee": {"login": "alice"}},
      {"__typename": "LabeledEvent", "createdAt": "...", "label": {"name": "2:in progress"}}
    ]}
  }
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

_logger = logging.getLogger(__name__)


def parse_github_datetime(value: Any) -> datetime:
    """Parse an ISO-8601 GitHub timestamp ("2026-01-24T10:30:00Z") into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            raise ValueError("empty timestamp")
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _optional_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_github_datetime(value)


def format_github_datetime(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _nodes(obj: Any, field: str) -> List[Any]:
    container = obj.get(field) if isinstance(obj, dict) else None
    if not isinstance(container, dict):
        return []
    nodes = container.get("nodes")
    return [n for n in nodes if n is not None] if isinstance(nodes, list) else []


@dataclass(frozen=True)
class AssignmentEvent:
    username: str
    timestamp: datetime


class LabelEventKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class LabelEvent:
    kind: LabelEventKind
    label: str
    timestamp: datetime


@dataclass(frozen=True)
class WorkItem:
    """Immutable snapshot of one issue as of fetch time."""

    external_id: str
    number: int
    repo: str
    title: str
    body: str
    labels: Tuple[str, ...]
    assignees: FrozenSet[str]
    state: str  # "open" | "closed"
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    assignment_events: Tuple[AssignmentEvent, ...] = ()
    label_events: Tuple[LabelEvent, ...] = ()
    url: str = ""

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    def latest_assignments(self) -> Dict[str, datetime]:
        """Most recent assignment timestamp per user (older events collapsed)."""
        out: Dict[str, datetime] = {}
        for ev in self.assignment_events:
            prev = out.get(ev.username)
            if prev is None or ev.timestamp > prev:
                out[ev.username] = ev.timestamp
        return out


@dataclass(frozen=True)
class PageInfo:
    has_next_page: bool
    end_cursor: Optional[str]


@dataclass(frozen=True)
class WorkItemPage:
    items: Tuple[WorkItem, ...]
    page_info: PageInfo
    skipped: int = 0


def _ordered_unique(names: Iterable[str]) -> Tuple[str, ...]:
    seen = set()
    out: List[str] = []
    for n in names:
        if n not in seen:
            seen.add(n)
            out.append(n)
    return tuple(out)


def work_item_from_graphql(node: Dict[str, Any], repo: str) -> WorkItem:
    """Convert one GraphQL issue node. Raises ValueError/TypeError/KeyError when malformed."""
    if not isinstance(node, dict):
        raise TypeError(f"issue node is {type(node).__name__}, expected dict")

    labels = _ordered_unique(
        str(n["name"]) for n in _nodes(node, "labels") if isinstance(n, dict) and n.get("name")
    )
    assignees = frozenset(
        str(n["login"]) for n in _nodes(node, "assignees") if isinstance(n, dict) and n.get("login")
    )

    assignment_events: List[AssignmentEvent] = []
    label_events: List[LabelEvent] = []
    for ev in _nodes(node, "timelineItems"):
        if not isinstance(ev, dict) or not ev.get("createdAt"):
            continue
        typename = ev.get("__typename", "AssignedEvent")
        ts = parse_github_datetime(ev["createdAt"])
        if typename == "AssignedEvent":
            login = (ev.get("assignee") or {}).get("login")
            if login:
                assignment_events.append(AssignmentEvent(username=str(login), timestamp=ts))
        elif typename in ("LabeledEvent", "UnlabeledEvent"):
            name = (ev.get("label") or {}).get("name")
            if name:
                kind = LabelEventKind.ADDED if typename == "LabeledEvent" else LabelEventKind.REMOVED
                label_events.append(LabelEvent(kind=kind, label=str(name), timestamp=ts))

    state = str(node.get("state") or "OPEN").strip().lower()
    if state not in ("open", "closed"):
        raise ValueError(f"unexpected issue state {node.get('state')!r}")

    return WorkItem(
        external_id=str(node["id"]),
        number=int(node["number"]),
        repo=repo,
        title=str(node.get("title") or ""),
        body=str(node.get("body") or ""),
        labels=labels,
        assignees=assignees,
        state=state,
        created_at=parse_github_datetime(node.get("createdAt") or node["updatedAt"]),
        updated_at=parse_github_datetime(node["updatedAt"]),
        closed_at=_optional_datetime(node.get("closedAt")),
        assignment_events=tuple(sorted(assignment_events, key=lambda e: e.timestamp)),
        label_events=tuple(sorted(label_events, key=lambda e: e.timestamp)),
        url=str(node.get("url") or ""),
    )


def work_item_page_from_graphql(data: Dict[str, Any], repo: str) -> WorkItemPage:
    """Convert `data.repository.issues`; malformed nodes are skipped and counted."""
    repository = (data or {}).get("repository")
    if not isinstance(repository, dict):
        raise ValueError(f"repository {repo} missing from GraphQL response")
    issues = repository.get("issues") or {}
    if not isinstance(issues, dict):
        raise ValueError(f"repository {repo}: issues is {type(issues).__name__}, expected object")
    raw_page = issues.get("pageInfo") or {}
    if not isinstance(raw_page, dict):
        raise ValueError(f"repository {repo}: pageInfo is {type(raw_page).__name__}, expected object")
    page_info = PageInfo(
        has_next_page=bool(raw_page.get("hasNextPage")),
        end_cursor=raw_page.get("endCursor") or None,
    )

    items: List[WorkItem] = []
    skipped = 0
    for node in issues.get("nodes") or []:
        try:
            items.append(work_item_from_graphql(node, repo))
        except (KeyError, ValueError, TypeError) as e:
            skipped += 1
            num = node.get("number") if isinstance(node, dict) else None
            _logger.warning("Skipping malformed issue node %s#%s: %s", repo, num, e)
    return WorkItemPage(items=tuple(items), page_info=page_info, skipped=skipped)


@dataclass(frozen=True)
class CommitRecord:
    sha: str
    author_login: Optional[str]
    files: Tuple[str, ...] = ()
    committed_at: Optional[datetime] = None


def commit_from_rest(d: Dict[str, Any]) -> CommitRecord:
    """Convert a /commits list item or /commits/{sha} detail."""
    if not isinstance(d, dict) or not d.get("sha"):
        raise ValueError("commit without sha")
    author = d.get("author") or d.get("committer") or {}
    login = author.get("login") if isinstance(author, dict) else None
    files = tuple(
        str(f["filename"]) for f in (d.get("files") or []) if isinstance(f, dict) and f.get("filename")
    )
    meta = d.get("commit") if isinstance(d.get("commit"), dict) else {}
    signature = meta.get("author") or meta.get("committer") or {}
    when = signature.get("date") if isinstance(signature, dict) else None
    return CommitRecord(
        sha=str(d["sha"]),
        author_login=str(login).strip().lower() if login else None,
        files=files,
        committed_at=_optional_datetime(when),
    )


@dataclass(frozen=True)
class RepoInfo:
    full_name: str
    description: str
    stars: int
    default_branch: str
    private: bool
    pushed_at: Optional[str]
    updated_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "full_name": self.full_name,
            "description": self.description,
            "stars": self.stars,
            "default_branch": self.default_branch,
            "private": self.private,
            "pushed_at": self.pushed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RepoInfo":
        return cls(
            full_name=str(d.get("full_name") or ""),
            description=str(d.get("description") or ""),
            stars=int(d.get("stars") or 0),
            default_branch=str(d.get("default_branch") or ""),
            private=bool(d.get("private")),
            pushed_at=d.get("pushed_at"),
            updated_at=d.get("updated_at"),
        )


def repo_info_from_rest(d: Dict[str, Any]) -> RepoInfo:
    if not isinstance(d, dict) or not d.get("full_name"):
        raise ValueError("repository response without full_name")
    return RepoInfo(
        full_name=str(d["full_name"]),
        description=str(d.get("description") or ""),
        stars=int(d.get("stargazers_count") or 0),
        default_branch=str(d.get("default_branch") or ""),
        private=bool(d.get("private")),
        pushed_at=d.get("pushed_at"),
        updated_at=d.get("updated_at"),
    )


@dataclass(frozen=True)
class RepoSummary:
    id: int
    name: str
    full_name: str
    description: str
    stars: int
    owner: str
    avatar_url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "full_name": self.full_name,
            "description": self.description,
            "stars": self.stars,
            "owner": self.owner,
            "avatar_url": self.avatar_url,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RepoSummary":
        return cls(**{k: d.get(k) for k in ("id", "name", "full_name", "description", "stars", "owner", "avatar_url")})


def repo_summary_from_rest(d: Dict[str, Any]) -> RepoSummary:
    owner = d.get("owner") or {}
    return RepoSummary(
        id=int(d.get("id") or 0),
        name=str(d.get("name") or ""),
        full_name=str(d["full_name"]),
        description=str(d.get("description") or ""),
        stars=int(d.get("stargazers_count") or 0),
        owner=str(owner.get("login") or ""),
        avatar_url=str(owner.get("avatar_url") or ""),
    )
