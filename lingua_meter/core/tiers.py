"""
Subscription tiers and plan limits.

The plan table is the single source of truth for credit and token limits.
Limits are always looked up from the tier, never stored per user.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from functools import total_ordering
from typing import List, Optional, Tuple, Union

# 1 credit = 100 tokens by fixed convention.
TOKENS_PER_CREDIT = 100


@total_ordering
class Tier(Enum):
    """Subscription tiers, ordered free < basic < premium < gold."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    GOLD = "gold"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other: "Tier") -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: Union[str, "Tier", None]) -> "Tier":
        """Parse a stored tier name, defaulting to FREE for unknown values."""
        if isinstance(value, Tier):
            return value
        if not value:
            return cls.FREE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.FREE


_TIER_ORDER: Tuple[Tier, ...] = (Tier.FREE, Tier.BASIC, Tier.PREMIUM, Tier.GOLD)

# Paid tiers from highest to lowest, the order entitlements are checked in.
PAID_TIERS_DESCENDING: Tuple[Tier, ...] = (Tier.GOLD, Tier.PREMIUM, Tier.BASIC)


def credits_to_tokens(credits: Union[int, float, Decimal]) -> int:
    """Convert credits to display tokens (1 credit = 100 tokens)."""
    return int((Decimal(str(credits)) * TOKENS_PER_CREDIT).to_integral_value())


def tokens_to_credits(tokens: Union[int, float, Decimal]) -> Decimal:
    """Convert display tokens back to credits."""
    return Decimal(str(tokens)) / TOKENS_PER_CREDIT


@dataclass(frozen=True)
class SubscriptionPlan:
    """A purchasable plan and the monthly allowance it grants."""
    tier: Tier
    name: str
    monthly_credit_limit: Decimal
    price_amount: Decimal

    def __post_init__(self):
        """Validate plan amounts."""
        if self.monthly_credit_limit < 0:
            raise ValueError("monthly_credit_limit cannot be negative")
        if self.price_amount < 0:
            raise ValueError("price_amount cannot be negative")

    @property
    def monthly_token_limit(self) -> int:
        return credits_to_tokens(self.monthly_credit_limit)


@dataclass(frozen=True)
class PlanTable:
    """Ordered plan table keyed by tier."""
    plans: Tuple[SubscriptionPlan, ...]

    def __post_init__(self):
        """Require exactly one plan per tier."""
        tiers = [plan.tier for plan in self.plans]
        if len(set(tiers)) != len(tiers):
            raise ValueError("Plan table contains duplicate tiers")
        missing = set(Tier) - set(tiers)
        if missing:
            names = sorted(t.value for t in missing)
            raise ValueError(f"Plan table is missing tiers: {names}")

    def get_plan(self, tier: Tier) -> SubscriptionPlan:
        for plan in self.plans:
            if plan.tier == tier:
                return plan
        raise ValueError(f"Unknown tier: {tier}")

    def credit_limit_for_tier(self, tier: Tier) -> Decimal:
        return self.get_plan(tier).monthly_credit_limit

    def token_limit_for_tier(self, tier: Tier) -> int:
        return self.get_plan(tier).monthly_token_limit

    def ordered(self) -> List[SubscriptionPlan]:
        return sorted(self.plans, key=lambda plan: plan.tier.rank)

    def paid_plans(self) -> List[SubscriptionPlan]:
        return [plan for plan in self.ordered() if plan.tier != Tier.FREE]


DEFAULT_PLANS = PlanTable((
    SubscriptionPlan(Tier.FREE, "Free", Decimal("0.50"), Decimal("0.00")),
    SubscriptionPlan(Tier.BASIC, "Basic", Decimal("2.50"), Decimal("4.00")),
    SubscriptionPlan(Tier.PREMIUM, "Premium", Decimal("7.50"), Decimal("11.00")),
    SubscriptionPlan(Tier.GOLD, "Gold", Decimal("15.00"), Decimal("20.00")),
))


def credit_limit_for_tier(tier: Tier, plans: Optional[PlanTable] = None) -> Decimal:
    """Credit limit (USD worth of usage) for a tier."""
    return (plans or DEFAULT_PLANS).credit_limit_for_tier(tier)


def token_limit_for_tier(tier: Tier, plans: Optional[PlanTable] = None) -> int:
    """Token limit for a tier, always credits x 100."""
    return (plans or DEFAULT_PLANS).token_limit_for_tier(tier)
