"""Period filters -> concrete [start, end] windows.

Supported filters:
  today (default), yesterday, this-week (Monday start), last-week,
  this-month, month-MM-YYYY (e.g. month-01-2026)
An explicit date resolves to that single day.

Both ends are inclusive at day granularity:
  start = 00:00:00.000 of the first day, end = 23:59:59.999 of the last day,
in the timezone of `now` (local time by default).
"""

from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Union

_logger = logging.getLogger(__name__)

NAMED_PERIODS = ("today", "yesterday", "this-week", "last-week", "this-month")
DEFAULT_PERIOD = "today"

_MONTH_RE = re.compile(r"^month-(\d{1,2})-(\d{4})$")
_END_OF_DAY = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class Period:
    name: str
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    def cutoff(self, lookback_days: int) -> datetime:
        """Earliest updated_at that can still affect this period's results."""
        return self.start - timedelta(days=int(lookback_days))


def _day_start(d: date, tz: Optional[tzinfo]) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def _day_end(d: date, tz: Optional[tzinfo]) -> datetime:
    return datetime.combine(d, _END_OF_DAY, tzinfo=tz)


def _local_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now().astimezone()
    if now.tzinfo is None:
        return now.astimezone()
    return now


def is_month_filter(name: str) -> bool:
    return bool(_MONTH_RE.match(str(name or "")))


def normalize_period_name(period: Optional[str]) -> str:
    """Canonical filter name used in cache keys (unknown names -> today)."""
    p = str(period or "").strip().lower()
    if p in NAMED_PERIODS or is_month_filter(p):
        return p
    if p.startswith("month-"):
        raise ValueError(f"invalid month filter {period!r}; expected month-MM-YYYY")
    if p:
        _logger.debug("Unknown period %r, using %s", period, DEFAULT_PERIOD)
    return DEFAULT_PERIOD


def _coerce_date(value: Union[date, datetime, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def resolve_period(
    period: Optional[str] = None,
    explicit_date: Optional[Union[date, datetime, str]] = None,
    *,
    now: Optional[datetime] = None,
) -> Period:
    n = _local_now(now)
    tz = n.tzinfo
    today = n.date()

    if explicit_date is not None:
        d = _coerce_date(explicit_date)
        return Period(name=f"date-{d.isoformat()}", start=_day_start(d, tz), end=_day_end(d, tz))

    name = normalize_period_name(period)

    m = _MONTH_RE.match(name)
    if m:
        month, year = int(m.group(1)), int(m.group(2))
        if not 1 <= month <= 12:
            raise ValueError(f"invalid month in filter {period!r}")
        last_day = calendar.monthrange(year, month)[1]
        return Period(
            name=name,
            start=_day_start(date(year, month, 1), tz),
            end=_day_end(date(year, month, last_day), tz),
        )

    if name == "yesterday":
        d = today - timedelta(days=1)
        return Period(name=name, start=_day_start(d, tz), end=_day_end(d, tz))
    if name == "this-week":
        monday = today - timedelta(days=today.weekday())
        return Period(name=name, start=_day_start(monday, tz), end=_day_end(today, tz))
    if name == "last-week":
        monday = today - timedelta(days=today.weekday() + 7)
        return Period(name=name, start=_day_start(monday, tz), end=_day_end(monday + timedelta(days=6), tz))
    if name == "this-month":
        return Period(name=name, start=_day_start(today.replace(day=1), tz), end=_day_end(today, tz))

    return Period(name=DEFAULT_PERIOD, start=_day_start(today, tz), end=_day_end(today, tz))
