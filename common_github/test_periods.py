"""
Pytest tests for common_github/periods.py (period filter -> [start, end]).
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from common_github.periods import normalize_period_name, resolve_period

UTC = timezone.utc
# Thursday
NOW = datetime(2026, 1, 22, 15, 0, tzinfo=UTC)


def _day(y, m, d):
    return datetime(y, m, d, tzinfo=UTC)


def test_today():
    p = resolve_period("today", now=NOW)
    assert p.name == "today"
    assert p.start == _day(2026, 1, 22)
    assert p.end == datetime(2026, 1, 22, 23, 59, 59, 999000, tzinfo=UTC)


def test_yesterday():
    p = resolve_period("yesterday", now=NOW)
    assert p.start == _day(2026, 1, 21)
    assert p.end.date() == date(2026, 1, 21)


def test_this_week_starts_monday():
    p = resolve_period("this-week", now=NOW)
    assert p.start == _day(2026, 1, 19)
    assert p.end.date() == date(2026, 1, 22)


def test_this_week_on_sunday():
    p = resolve_period("this-week", now=datetime(2026, 1, 25, 12, tzinfo=UTC))
    assert p.start == _day(2026, 1, 19)
    assert p.end.date() == date(2026, 1, 25)


def test_last_week_is_full_monday_to_sunday():
    p = resolve_period("last-week", now=NOW)
    assert p.start == _day(2026, 1, 12)
    assert p.end.date() == date(2026, 1, 18)
    assert p.end - p.start == timedelta(days=7) - timedelta(milliseconds=1)


def test_this_month():
    p = resolve_period("this-month", now=NOW)
    assert p.start == _day(2026, 1, 1)
    assert p.end.date() == date(2026, 1, 22)


@pytest.mark.parametrize(
    "name,first,last",
    [
        ("month-01-2026", date(2026, 1, 1), date(2026, 1, 31)),
        ("month-2-2024", date(2024, 2, 1), date(2024, 2, 29)),
        ("month-02-2026", date(2026, 2, 1), date(2026, 2, 28)),
        ("month-12-2025", date(2025, 12, 1), date(2025, 12, 31)),
    ],
)
def test_month_filter(name, first, last):
    p = resolve_period(name, now=NOW)
    assert p.start.date() == first
    assert p.end.date() == last


@pytest.mark.parametrize("bad", ["month-13-2026", "month-00-2026", "month-1-26", "month-x"])
def test_invalid_month_filter_raises(bad):
    with pytest.raises(ValueError):
        resolve_period(bad, now=NOW)


@pytest.mark.parametrize("unknown", [None, "", "fortnight", "TODAY "])
def test_unknown_or_empty_means_today(unknown):
    p = resolve_period(unknown, now=NOW)
    assert p.name == "today"
    assert p.start == _day(2026, 1, 22)


def test_explicit_date_overrides_period():
    p = resolve_period("this-month", "2026-01-05", now=NOW)
    assert p.name == "date-2026-01-05"
    assert p.start == _day(2026, 1, 5)
    assert p.end.date() == date(2026, 1, 5)


def test_contains_is_inclusive_at_both_ends():
    p = resolve_period("today", now=NOW)
    assert p.contains(p.start)
    assert p.contains(p.end)
    assert not p.contains(p.start - timedelta(microseconds=1))
    assert not p.contains(p.end + timedelta(milliseconds=1))


def test_cutoff_looks_back_from_start():
    p = resolve_period("today", now=NOW)
    assert p.cutoff(7) == _day(2026, 1, 15)


def test_window_follows_timezone_of_now():
    tz = timezone(timedelta(hours=7))
    now = datetime(2026, 1, 22, 1, 30, tzinfo=tz)
    p = resolve_period("today", now=now)
    assert p.start == datetime(2026, 1, 22, tzinfo=tz)
    assert p.start.astimezone(UTC) == datetime(2026, 1, 21, 17, tzinfo=UTC)


def test_normalize_period_name():
    assert normalize_period_name("This-Week") == "this-week"
    assert normalize_period_name("month-01-2026") == "month-01-2026"
    assert normalize_period_name("bogus") == "today"
