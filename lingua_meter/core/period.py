"""
Billing period calculation.

Billing periods are monthly windows anchored to the day-of-month the
subscription began. When a month is shorter than the anchor day the
boundary is clamped to that month's last day, so anchor 31 gives
Feb 28/29, Apr 30, and so on, and consecutive periods always tile without
gaps or overlaps.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Tuple

END_OF_DAY = time(23, 59, 59, 999999)


@dataclass(frozen=True)
class BillingPeriod:
    """A billing window, inclusive of both ends."""
    start: datetime
    end: datetime

    def __post_init__(self):
        """Validate time window is logical."""
        if self.end <= self.start:
            raise ValueError("period end must be after period start")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def is_expired(self, now: datetime) -> bool:
        return now > self.end


def _validate_anchor(anchor_day: int) -> None:
    if not isinstance(anchor_day, int) or isinstance(anchor_day, bool) or not 1 <= anchor_day <= 31:
        raise ValueError(f"anchor_day must be an integer between 1 and 31, got {anchor_day!r}")


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def anchor_date(year: int, month: int, anchor_day: int) -> date:
    """The anchor day within a month, clamped to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def _period_from_start(start_day: date, anchor_day: int, tzinfo) -> BillingPeriod:
    next_year, next_month = _shift_month(start_day.year, start_day.month, 1)
    next_start = anchor_date(next_year, next_month, anchor_day)
    end_day = next_start - timedelta(days=1)
    return BillingPeriod(
        start=datetime.combine(start_day, time.min, tzinfo=tzinfo),
        end=datetime.combine(end_day, END_OF_DAY, tzinfo=tzinfo),
    )


def current_period(anchor_day: int, now: datetime) -> BillingPeriod:
    """Compute the billing period containing ``now``.

    The start is the most recent occurrence of ``anchor_day`` at or before
    ``now``; if ``now`` falls before this month's anchor, the period began
    last month. The end is the day before the next anchor, at end of day.
    Both boundaries carry ``now``'s tzinfo.

    Args:
        anchor_day: Day of month the subscription began (1-31)
        now: Current moment

    Returns:
        The active BillingPeriod

    Raises:
        ValueError: If anchor_day is outside 1-31
    """
    _validate_anchor(anchor_day)
    today = now.date()
    start_day = anchor_date(today.year, today.month, anchor_day)
    if today < start_day:
        year, month = _shift_month(today.year, today.month, -1)
        start_day = anchor_date(year, month, anchor_day)
    return _period_from_start(start_day, anchor_day, now.tzinfo)


def next_period(period: BillingPeriod, anchor_day: int) -> BillingPeriod:
    """The period immediately following ``period``."""
    _validate_anchor(anchor_day)
    start_day = period.end.date() + timedelta(days=1)
    return _period_from_start(start_day, anchor_day, period.end.tzinfo)
