"""
Pytest tests for common_github/timeline.py (label events -> status intervals).
"""

from datetime import datetime, timedelta, timezone

from common_types import IssueStatus
from common_github.github_types import AssignmentEvent, LabelEvent, LabelEventKind
from common_github.timeline import replay

UTC = timezone.utc
T0 = datetime(2026, 1, 20, 10, 0, tzinfo=UTC)


def _h(hours):
    return T0 + timedelta(hours=hours)


def _added(label, hours):
    return LabelEvent(kind=LabelEventKind.ADDED, label=label, timestamp=_h(hours))


def _removed(label, hours):
    return LabelEvent(kind=LabelEventKind.REMOVED, label=label, timestamp=_h(hours))


def _statuses(intervals):
    return [iv.status for iv in intervals]


def _assert_contiguous(intervals, start, end):
    assert intervals[0].start == start
    assert intervals[-1].end == end
    for a, b in zip(intervals, intervals[1:]):
        assert a.end == b.start
    assert sum((iv.duration for iv in intervals), timedelta()) == end - start


def test_no_events_single_assigned_interval():
    ivs = replay(T0, [], [], now=_h(5))
    assert _statuses(ivs) == [IssueStatus.ASSIGNED]
    assert ivs[0].duration_ms == 5 * 3600 * 1000


def test_progression_closed_issue():
    events = [
        _added("2:in progress", 1),
        _added("2.5 review", 3),
        _removed("2:in progress", 3.5),
        _added("3:local done", 6),
    ]
    closed = _h(8)
    ivs = replay(T0, events, ["2.5 review", "3:local done"], closed_at=closed, updated_at=closed, now=_h(50))

    assert _statuses(ivs) == [
        IssueStatus.ASSIGNED,
        IssueStatus.IN_PROGRESS,
        IssueStatus.REVIEW,
        IssueStatus.LOCAL_DONE,
    ]
    assert [iv.duration for iv in ivs] == [timedelta(hours=h) for h in (1, 2, 3, 2)]
    _assert_contiguous(ivs, T0, closed)


def test_removing_current_label_returns_to_assigned():
    ivs = replay(T0, [_added("2:in progress", 1), _removed("2:in progress", 2)], [], now=_h(4))
    assert _statuses(ivs) == [IssueStatus.ASSIGNED, IssueStatus.IN_PROGRESS, IssueStatus.ASSIGNED]
    _assert_contiguous(ivs, T0, _h(4))


def test_assignment_and_unknown_label_events_are_ignored():
    events = [
        AssignmentEvent(username="alice", timestamp=_h(1)),
        _added("bug", 2),
        _added("2:in progress", 3),
    ]
    ivs = replay(T0, events, ["bug", "2:in progress"], now=_h(4))
    assert _statuses(ivs) == [IssueStatus.ASSIGNED, IssueStatus.IN_PROGRESS]


def test_missing_events_reconciled_at_updated_at():
    # Labels say review but GitHub returned no events for it.
    ivs = replay(T0, [_added("2:in progress", 1)], ["2.5 review"], updated_at=_h(5), now=_h(6))
    assert _statuses(ivs) == [IssueStatus.ASSIGNED, IssueStatus.IN_PROGRESS, IssueStatus.REVIEW]
    assert ivs[-1].start == _h(5)
    _assert_contiguous(ivs, T0, _h(6))


def test_out_of_order_events_are_sorted():
    events = [_added("2.5 review", 2), _added("2:in progress", 1)]
    ivs = replay(T0, events, ["2.5 review"], now=_h(3))
    assert _statuses(ivs) == [IssueStatus.ASSIGNED, IssueStatus.IN_PROGRESS, IssueStatus.REVIEW]


def test_label_at_creation_has_no_zero_length_interval():
    ivs = replay(T0, [_added("2:in progress", 0)], ["2:in progress"], now=_h(2))
    assert _statuses(ivs) == [IssueStatus.IN_PROGRESS]
    _assert_contiguous(ivs, T0, _h(2))


def test_to_dict():
    ivs = replay(T0, [], [], now=_h(1))
    d = ivs[0].to_dict()
    assert d["status"] == "assigned"
    assert d["duration_ms"] == 3600 * 1000
    assert d["start"] == T0.isoformat()


def test_change_and_revert_at_same_instant_merges():
    events = [_added("2:in progress", 1), _removed("2:in progress", 1)]
    ivs = replay(T0, events, [], now=_h(3))

    assert _statuses(ivs) == [IssueStatus.ASSIGNED]
    assert (ivs[0].start, ivs[0].end) == (T0, _h(3))


def test_same_instant_flip_between_other_statuses_merges():
    events = [
        _added("2:in progress", 1),
        _added("2.5 review", 2),
        _removed("2.5 review", 2),
        _added("2:in progress", 2),
    ]
    ivs = replay(T0, events, ["2:in progress"], now=_h(4))

    assert _statuses(ivs) == [IssueStatus.ASSIGNED, IssueStatus.IN_PROGRESS]
    assert (ivs[1].start, ivs[1].end) == (_h(1), _h(4))
    _assert_contiguous(ivs, T0, _h(4))
