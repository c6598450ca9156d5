"""
Unit tests for billing period calculation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from lingua_meter.core.period import (
    END_OF_DAY,
    BillingPeriod,
    anchor_date,
    current_period,
    next_period,
)


def utc(year, month, day, hour=12):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


class TestCurrentPeriod:
    """Test period boundaries around the anchor day."""

    def test_after_anchor_starts_this_month(self):
        period = current_period(10, utc(2024, 3, 15))
        assert period.start == datetime(2024, 3, 10, tzinfo=timezone.utc)
        assert period.end.date() == datetime(2024, 4, 9).date()
        assert period.end.time() == END_OF_DAY

    def test_before_anchor_starts_last_month(self):
        period = current_period(20, utc(2024, 3, 5))
        assert period.start.date() == datetime(2024, 2, 20).date()
        assert period.end.date() == datetime(2024, 3, 19).date()

    def test_on_anchor_day(self):
        period = current_period(5, utc(2024, 3, 5, hour=0))
        assert period.start.date() == datetime(2024, 3, 5).date()

    def test_year_boundary(self):
        period = current_period(15, utc(2024, 1, 3))
        assert period.start.date() == datetime(2023, 12, 15).date()
        assert period.end.date() == datetime(2024, 1, 14).date()

    def test_contains_now(self):
        now = utc(2024, 7, 31)
        period = current_period(31, now)
        assert period.contains(now)
        assert not period.is_expired(now)

    def test_keeps_timezone(self):
        period = current_period(1, utc(2024, 5, 2))
        assert period.start.tzinfo == timezone.utc
        assert period.end.tzinfo == timezone.utc

    @pytest.mark.parametrize("anchor", [0, 32, -1])
    def test_invalid_anchor(self, anchor):
        with pytest.raises(ValueError, match="anchor_day"):
            current_period(anchor, utc(2024, 1, 1))


class TestClamping:
    """Anchor days beyond a month's length clamp to its last day."""

    def test_anchor_31_in_february(self):
        assert anchor_date(2023, 2, 31).day == 28
        assert anchor_date(2024, 2, 31).day == 29

    def test_anchor_31_period_spanning_february(self):
        period = current_period(31, utc(2024, 2, 10))
        assert period.start.date() == datetime(2024, 1, 31).date()
        assert period.end.date() == datetime(2024, 2, 28).date()

    def test_anchor_31_late_february(self):
        period = current_period(31, utc(2024, 2, 29))
        assert period.start.date() == datetime(2024, 2, 29).date()
        assert period.end.date() == datetime(2024, 3, 30).date()


class TestNextPeriod:
    """Consecutive periods tile without gaps or overlaps."""

    @pytest.mark.parametrize("anchor", [1, 15, 28, 29, 30, 31])
    def test_twelve_months_tile(self, anchor):
        period = current_period(anchor, utc(2023, 1, 20))
        for _ in range(12):
            following = next_period(period, anchor)
            assert following.start.date() == period.end.date() + timedelta(days=1)
            assert following.start > period.end
            period = following

    def test_next_matches_current_at_its_start(self):
        period = current_period(12, utc(2024, 6, 20))
        following = next_period(period, 12)
        assert following == current_period(12, following.start)


class TestBillingPeriod:
    def test_end_must_follow_start(self):
        now = utc(2024, 1, 1)
        with pytest.raises(ValueError, match="period end"):
            BillingPeriod(start=now, end=now)

    def test_expired_after_end(self):
        period = current_period(1, utc(2024, 1, 10))
        assert period.is_expired(period.end + timedelta(microseconds=1))
