"""
Pytest tests for refresh_scheduler.py (quota floor, overlap guard, per-repo isolation).
"""

import logging
import threading
import time

from refresh_scheduler import BackgroundRefreshScheduler, SchedulerState


class Refresher:
    def __init__(self, changed=None, fail=()):
        self.changed = changed or {}
        self.fail = set(fail)
        self.calls = []

    def refresh_repo(self, repo):
        self.calls.append(repo)
        if repo in self.fail:
            raise RuntimeError(f"{repo} exploded")
        return self.changed.get(repo, True)


def _scheduler(refresher, repos, **kw):
    sleeps = []
    kw.setdefault("sleep", sleeps.append)
    s = BackgroundRefreshScheduler(refresher, repos, **kw)
    return s, sleeps


def test_cycle_refreshes_repos_sequentially_with_delay():
    r = Refresher(changed={"o/b": False})
    s, sleeps = _scheduler(r, ["o/a", "o/b", "o/c"], inter_repo_delay_s=2)

    result = s.run_cycle()

    assert r.calls == ["o/a", "o/b", "o/c"]
    assert (result.refreshed, result.unchanged, result.failed) == (2, 1, 0)
    assert sleeps == [2.0, 2.0]
    assert s.state is SchedulerState.IDLE


def test_failure_does_not_stop_the_cycle(caplog):
    r = Refresher(fail={"o/b"})
    s, _ = _scheduler(r, ["o/a", "o/b", "o/c"])

    with caplog.at_level(logging.ERROR, logger="refresh_scheduler"):
        result = s.run_cycle()

    assert r.calls == ["o/a", "o/b", "o/c"]
    assert (result.refreshed, result.failed) == (2, 1)
    assert any("o/b" in rec.getMessage() for rec in caplog.records)
    assert s.state is SchedulerState.IDLE


def test_low_quota_skips_cycle(caplog):
    r = Refresher()
    s, _ = _scheduler(r, ["o/a"], remaining_quota=lambda: 299, min_remaining_quota=300)

    with caplog.at_level(logging.WARNING, logger="refresh_scheduler"):
        result = s.run_cycle()

    assert result.skipped
    assert r.calls == []
    assert any(rec.levelno == logging.WARNING for rec in caplog.records)
    assert s.state is SchedulerState.IDLE


def test_quota_at_floor_or_unknown_runs():
    for quota in (300, None):
        r = Refresher()
        s, _ = _scheduler(r, ["o/a"], remaining_quota=lambda q=quota: q, min_remaining_quota=300)
        assert not s.run_cycle().skipped
        assert r.calls == ["o/a"]


def test_overlapping_cycle_is_skipped():
    entered, release = threading.Event(), threading.Event()

    class Slow:
        def refresh_repo(self, repo):
            entered.set()
            release.wait(5)
            return True

    s, _ = _scheduler(Slow(), ["o/a"])
    t = threading.Thread(target=s.run_cycle)
    t.start()
    assert entered.wait(5)
    assert s.state is SchedulerState.RUNNING

    second = s.run_cycle()
    release.set()
    t.join(5)

    assert second.skipped
    assert second.reason == "already running"
    assert s.state is SchedulerState.IDLE
    assert s.last_result.refreshed == 1


def test_state_resets_when_refresher_raises_base_exception():
    class Interrupting:
        def refresh_repo(self, repo):
            raise KeyboardInterrupt()

    s, _ = _scheduler(Interrupting(), ["o/a"])
    try:
        s.run_cycle()
    except KeyboardInterrupt:
        pass
    assert s.state is SchedulerState.IDLE


def test_start_and_cancel():
    r = Refresher()
    s = BackgroundRefreshScheduler(r, ["o/a"], interval_s=0.01, inter_repo_delay_s=0)
    handle = s.start()
    deadline = time.monotonic() + 5
    while len(r.calls) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    handle.cancel(timeout_s=5)

    assert len(r.calls) >= 2
    assert not handle.is_alive
