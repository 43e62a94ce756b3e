"""Replay an issue's label events into a status-interval history.

Rules:
  - start in ASSIGNED at creation time
  - label added that maps to a different status -> new interval at that instant
  - label removed that backs the current status -> back to ASSIGNED
  - assignment events never change status
  - afterwards, if the highest-priority *current* label disagrees with the
    replayed status and updated_at is later than the last interval start, add
    one transition at updated_at (events GitHub did not return)
  - the last interval ends at closed_at for closed items, else at `now`

Intervals are contiguous and half-open; their durations sum to end - created_at.
Neighbouring intervals always differ in status.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from common_types import IssueStatus

from .github_types import AssignmentEvent, LabelEvent, LabelEventKind
from .status_labels import StatusLabelTable, derive_status, status_for_label

_MS = timedelta(milliseconds=1)


@dataclass(frozen=True)
class StatusInterval:
    status: IssueStatus
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_ms(self) -> int:
        return self.duration // _MS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_ms": self.duration_ms,
        }


def _clamp(ts: datetime, lo: datetime, hi: datetime) -> datetime:
    return lo if ts < lo else hi if ts > hi else ts


def replay(
    created_at: datetime,
    events: Iterable[Union[LabelEvent, AssignmentEvent]],
    current_labels: Sequence[str],
    *,
    closed_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    table: Optional[StatusLabelTable] = None,
) -> List[StatusInterval]:
    end = closed_at if closed_at is not None else (now or datetime.now(timezone.utc))
    if end < created_at:
        end = created_at

    intervals: List[StatusInterval] = []
    current = IssueStatus.ASSIGNED
    start = created_at

    def _close(at: datetime) -> None:
        # A change and its revert at one instant leave no gap; extend the previous interval.
        last = intervals[-1] if intervals else None
        if last is not None and last.status is current and last.end == start:
            intervals[-1] = StatusInterval(status=current, start=last.start, end=at)
        else:
            intervals.append(StatusInterval(status=current, start=start, end=at))

    def _transition(at: datetime, new_status: IssueStatus) -> None:
        nonlocal current, start
        if at > start:
            _close(at)
        current = new_status
        start = at

    for ev in sorted(events, key=lambda e: e.timestamp):
        if not isinstance(ev, LabelEvent):
            continue
        at = _clamp(ev.timestamp, start, end)
        mapped = status_for_label(ev.label, table)
        if mapped is None:
            continue
        if ev.kind is LabelEventKind.ADDED and mapped is not current:
            _transition(at, mapped)
        elif ev.kind is LabelEventKind.REMOVED and mapped is current:
            _transition(at, IssueStatus.ASSIGNED)

    target = derive_status(current_labels, table)
    if target is not current and updated_at is not None and updated_at > start:
        _transition(min(updated_at, end), target)

    _close(end)
    return intervals
