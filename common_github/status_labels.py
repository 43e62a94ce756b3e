"""Label set -> canonical IssueStatus.

One priority table (highest first), one label per status:

  dev_checked   "5:dev checked"
  dev_deployed  "4:dev deployed"
  local_done    "3:local done"
  time_up       "time up"
  review        "2.5 review"
  in_progress   "2:in progress"
  assigned      (default when no status label is present)

Matching is exact after trim + casefold; "code review needed" is NOT "review".
"""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from common_types import IssueStatus

STATUS_PRIORITY = (
    IssueStatus.DEV_CHECKED,
    IssueStatus.DEV_DEPLOYED,
    IssueStatus.LOCAL_DONE,
    IssueStatus.TIME_UP,
    IssueStatus.REVIEW,
    IssueStatus.IN_PROGRESS,
)

DEFAULT_STATUS_LABELS: Dict[IssueStatus, str] = {
    IssueStatus.DEV_CHECKED: "5:dev checked",
    IssueStatus.DEV_DEPLOYED: "4:dev deployed",
    IssueStatus.LOCAL_DONE: "3:local done",
    IssueStatus.TIME_UP: "time up",
    IssueStatus.REVIEW: "2.5 review",
    IssueStatus.IN_PROGRESS: "2:in progress",
}


def _norm(label: str) -> str:
    return str(label or "").strip().casefold()


class StatusLabelTable:
    def __init__(self, labels: Optional[Mapping[IssueStatus, str]] = None):
        table = dict(DEFAULT_STATUS_LABELS)
        if labels:
            table.update(labels)
        self._label_by_status = table
        self._status_by_label: Dict[str, IssueStatus] = {}
        for status in STATUS_PRIORITY:
            key = _norm(table[status])
            if key in self._status_by_label:
                raise ValueError(f"label {table[status]!r} mapped to more than one status")
            self._status_by_label[key] = status

    @classmethod
    def from_settings(cls, overrides: Mapping[str, str]) -> "StatusLabelTable":
        """Build from a settings mapping like {"in_progress": "WIP"}."""
        labels: Dict[IssueStatus, str] = {}
        for k, v in (overrides or {}).items():
            try:
                status = IssueStatus(str(k).strip().lower())
            except ValueError:
                raise ValueError(f"unknown status {k!r} in status_labels") from None
            if status is IssueStatus.ASSIGNED:
                raise ValueError("'assigned' is the default status and has no label")
            labels[status] = str(v)
        return cls(labels)

    def label_for(self, status: IssueStatus) -> Optional[str]:
        return self._label_by_status.get(status)

    def status_for_label(self, label: str) -> Optional[IssueStatus]:
        return self._status_by_label.get(_norm(label))

    def derive_status(self, labels: Iterable[str]) -> IssueStatus:
        present = {s for s in (self.status_for_label(lb) for lb in labels) if s is not None}
        for status in STATUS_PRIORITY:
            if status in present:
                return status
        return IssueStatus.ASSIGNED


DEFAULT_TABLE = StatusLabelTable()


def derive_status(labels: Iterable[str], table: Optional[StatusLabelTable] = None) -> IssueStatus:
    return (table or DEFAULT_TABLE).derive_status(labels)


def status_for_label(label: str, table: Optional[StatusLabelTable] = None) -> Optional[IssueStatus]:
    return (table or DEFAULT_TABLE).status_for_label(label)
