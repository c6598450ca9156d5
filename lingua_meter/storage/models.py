"""
Data models for storage layer.

Rows of the ``users`` and ``usage`` tables. Only raw counters live here;
costs, percentages and limits are derived on read.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict

from ..core.pricing import UsageCounters


@dataclass(frozen=True)
class UserRecord:
    """Subscription bookkeeping for one user."""
    user_id: str
    subscription_tier: str
    billing_anchor_day: int
    billing_cycle_start: datetime
    billing_cycle_end: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Usage counters for a user's current billing period.

    ``daily_usage`` maps ISO dates (YYYY-MM-DD) to that day's counter deltas.
    """
    user_id: str
    current_period_start: datetime
    current_period_end: datetime
    counters: UsageCounters
    daily_usage: Dict[str, UsageCounters] = field(default_factory=dict)
