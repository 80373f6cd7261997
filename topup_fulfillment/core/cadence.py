"""Next-run computation for recurring schedules."""
import calendar
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from topup_fulfillment.timeutils import ensure_utc


class Cadence(str, Enum):
    """Recurrence rule of a schedule."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    DATE = "date"  # fires once


_MONTHS_PER_STEP = {
    Cadence.MONTHLY.value: 1,
    Cadence.QUARTERLY.value: 3,
    Cadence.YEARLY.value: 12,
}


def utc_midnight(value: datetime) -> datetime:
    return ensure_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)


def add_months(value: datetime, months: int, anchor_day: Optional[int] = None) -> datetime:
    """
    Add calendar months, clamping to the last day of the target month.

    ``anchor_day`` is the intended day of month; it wins over ``value.day``
    so a schedule clamped to the 28th/29th/30th goes back to the 31st when
    the month allows it.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = anchor_day or value.day
    return value.replace(year=year, month=month, day=min(day, calendar.monthrange(year, month)[1]))


def compute_next_run_at(
    from_: datetime,
    cadence: str,
    start_at: Optional[datetime] = None,
    anchor_day: Optional[int] = None,
) -> datetime:
    """
    Compute the next run time, always at 00:00:00 UTC.

    Args:
        from_: Time the cadence advances from (usually the current next_run_at)
        cadence: weekly, monthly, quarterly, yearly or date; anything else
            is treated as monthly
        start_at: Explicit start date; anchors the computation when given
        anchor_day: Intended day of month for month-based cadences

    Returns:
        datetime: Aware UTC datetime. For ``date`` this is the anchor itself.
    """
    base = utc_midnight(start_at if start_at is not None else from_)
    cadence = str(cadence).lower()

    if cadence == Cadence.DATE.value:
        return base
    if cadence == Cadence.WEEKLY.value:
        return base + timedelta(weeks=1)
    return add_months(base, _MONTHS_PER_STEP.get(cadence, 1), anchor_day)
