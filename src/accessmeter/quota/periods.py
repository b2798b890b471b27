"""
Billing period arithmetic.

Periods are calendar months measured from the counter's period start; a start
on the 31st resets on the last day of shorter months, and the next period then
starts from that clamped day. Everything here is a pure function of its
arguments; callers inject ``now``.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from dateutil.relativedelta import relativedelta

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from storage."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    return value + relativedelta(months=months)


def next_reset(period_start: datetime) -> datetime:
    """First instant of the period after the one starting at ``period_start``."""
    return add_months(period_start, 1)


def period_elapsed(now: datetime, period_start: datetime) -> bool:
    """True once at least one calendar month has passed since ``period_start``."""
    return now >= next_reset(period_start)


def current_period_start(now: datetime, period_start: datetime) -> datetime:
    """Start of the period containing ``now``, stepping whole periods from ``period_start``.

    The returned period has not elapsed at ``now``, so a rolled-over counter
    is never rolled again within the same period.
    """
    start = period_start
    while period_elapsed(now, start):
        start = next_reset(start)
    return start


__all__ = [
    "Clock",
    "utc_now",
    "as_utc",
    "add_months",
    "next_reset",
    "period_elapsed",
    "current_period_start",
]
