"""Calendar periods that partition quota counters."""

import math
from datetime import datetime, timezone
from enum import Enum


class Period(str, Enum):
    """Quota window granularity. All periods follow UTC calendar boundaries."""

    DAY = "day"
    MONTH = "month"


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def period_key(period: Period, now: datetime) -> str:
    """
    Key identifying the period containing ``now``.

    Returns:
        ``YYYY-MM-DD`` for days, ``YYYY-MM`` for months
    """
    now = _as_utc(now)
    if period is Period.DAY:
        return now.strftime("%Y-%m-%d")
    return now.strftime("%Y-%m")


def period_start(period: Period, now: datetime) -> datetime:
    """First instant of the period containing ``now``."""
    now = _as_utc(now)
    if period is Period.DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def period_end(period: Period, now: datetime) -> datetime:
    """First instant of the period following the one containing ``now``."""
    start = period_start(period, now)
    if period is Period.DAY:
        return datetime.fromordinal(start.toordinal() + 1).replace(tzinfo=timezone.utc)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def seconds_until_end(period: Period, now: datetime) -> int:
    """Whole seconds from ``now`` to the end of its period (at least 1)."""
    remaining = (period_end(period, now) - _as_utc(now)).total_seconds()
    return max(1, math.ceil(remaining))
