"""
Billing interval arithmetic.

Calendar months and years clamp to the last day of the target month, so a
subscription started on January 31st renews on February 28th (or 29th),
then on March 28th.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from billing.state_machines import IntervalType

FIXED_INTERVALS = {
    IntervalType.ONE_MINUTE: timedelta(minutes=1),
    IntervalType.FIVE_MINUTES: timedelta(minutes=5),
    IntervalType.DAILY: timedelta(days=1),
    IntervalType.WEEK: timedelta(days=7),
}


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_interval(moment: datetime, interval_type: str, count: int = 1) -> datetime:
    """
    Advance moment by count billing intervals.

    Raises:
        ValueError: Unknown interval type
    """
    if interval_type in FIXED_INTERVALS:
        return moment + FIXED_INTERVALS[interval_type] * count
    if interval_type == IntervalType.MONTH:
        return add_months(moment, count)
    if interval_type == IntervalType.YEAR:
        return add_months(moment, 12 * count)
    raise ValueError(f"Unknown interval type: {interval_type!r}")
