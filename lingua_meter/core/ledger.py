"""
Usage ledger.

Records per-user usage for the current billing period and answers quota
questions. Only raw counters are stored; costs, limits and percentages are
derived on every read from the plan table and pricing rates.

Every operation first brings the user's record up to date: creates it on
first use, rolls the period over (once) when it has ended, and reconciles
the stored tier against the live subscription status.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Mapping, Optional, Union

from .entitlements import EntitlementResolver, SubscriptionStatus, utcnow
from .errors import PersistenceError
from .offline_cache import CACHE_KEY, OfflineEntitlementCache
from .period import BillingPeriod, current_period
from .pricing import (
    DEFAULT_PRICING,
    ONE_MILLION,
    PricingRates,
    UsageCosts,
    UsageCounters,
    calculate_costs,
    calculate_percentage_used,
)
from .reconciliation import ReconciliationResult, ReconciliationService, UserLocks
from .subscription import SubscriptionService
from .tiers import DEFAULT_PLANS, PlanTable, Tier, credits_to_tokens
from .token_counter import estimate_tokens
from ..config.loader import MeteringConfig, default_metering_config
from ..sdk.providers import RuntimeMode, create_provider
from ..storage.db import DEFAULT_DB_PATH
from ..storage.kv import SqliteKeyValueStore
from ..storage.models import UsageRecord, UserRecord
from ..storage.repository import LedgerRepository, get_repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenBalance:
    """Usage expressed in display tokens (1 credit = 100 tokens)."""
    used_tokens: int
    token_limit: int
    percentage_used: float

    @property
    def remaining_tokens(self) -> int:
        return max(self.token_limit - self.used_tokens, 0)


@dataclass(frozen=True)
class MonthlyUsage:
    """A user's usage for the current billing period."""
    user_id: str
    tier: Tier
    period: BillingPeriod
    counters: UsageCounters
    daily_usage: Dict[str, UsageCounters] = field(default_factory=dict)
    plans: PlanTable = DEFAULT_PLANS
    rates: PricingRates = DEFAULT_PRICING
    reconciliation: Optional[ReconciliationResult] = None

    @property
    def costs(self) -> UsageCosts:
        return calculate_costs(self.counters, self.rates)

    @property
    def credit_limit(self) -> Decimal:
        return self.plans.credit_limit_for_tier(self.tier)

    @property
    def token_limit(self) -> int:
        return self.plans.token_limit_for_tier(self.tier)

    @property
    def percentage_used(self) -> float:
        return calculate_percentage_used(self.costs.total_cost, self.credit_limit)

    @property
    def used_tokens(self) -> int:
        return credits_to_tokens(self.costs.total_cost)

    @property
    def remaining_credits(self) -> Decimal:
        return max(self.credit_limit - self.costs.total_cost, Decimal("0"))

    @property
    def has_quota(self) -> bool:
        return self.percentage_used < 100


class UsageLedger:
    """Per-user usage tracking with lazy rollover and tier reconciliation.

    Args:
        repository: Storage for user and usage rows
        reconciler: Reconciliation service; None disables tier syncing and
            every new user starts on the free tier
        plans: Plan table (credit limits per tier)
        rates: Pricing rates
        clock: Source of the current time
    """

    def __init__(
        self,
        repository: LedgerRepository,
        reconciler: Optional[ReconciliationService] = None,
        plans: PlanTable = DEFAULT_PLANS,
        rates: PricingRates = DEFAULT_PRICING,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.reconciler = reconciler
        self.plans = plans
        self.rates = rates
        self._clock = clock
        self._locks = reconciler.locks if reconciler is not None else UserLocks()

    async def _live_status(self) -> Optional[SubscriptionStatus]:
        if self.reconciler is None:
            return None
        return await self.reconciler.subscriptions.get_current_subscription()

    def _ensure_user(
        self,
        user_id: str,
        status: Optional[SubscriptionStatus],
        now: datetime,
    ) -> UserRecord:
        user = self.repository.get_user(user_id)
        if user is not None:
            return user

        tier = status.tier if status is not None and status.is_confirmed else Tier.FREE
        anchor_day = now.day
        period = current_period(anchor_day, now)
        if self.repository.create_user(user_id, tier.value, anchor_day, period, now):
            logger.info("Created ledger record for user %s on %s tier", user_id, tier.value)
        user = self.repository.get_user(user_id)
        if user is None:
            raise PersistenceError(f"Ledger record for user {user_id} vanished after creation")
        return user

    def _rollover_if_needed(
        self,
        user: UserRecord,
        usage: UsageRecord,
        status: Optional[SubscriptionStatus],
        now: datetime,
    ) -> bool:
        if now <= usage.current_period_end:
            return False

        if self.reconciler is not None:
            tier = self.reconciler.rollover_tier(user, status)
        else:
            tier = Tier.parse(user.subscription_tier)
        period = current_period(user.billing_anchor_day, now)
        applied = self.repository.start_period(
            user.user_id, tier.value, period, now,
            expected_period_end=usage.current_period_end,
        )
        if applied:
            logger.info(
                "Rolled over user %s to period %s - %s on %s tier",
                user.user_id, period.start.date(), period.end.date(), tier.value,
            )
        return applied

    async def _refresh(self, user_id: str) -> Optional[ReconciliationResult]:
        """Create, roll over and reconcile the user's record. Caller holds the lock."""
        now = self._clock()
        status = await self._live_status()

        user = self._ensure_user(user_id, status, now)
        usage = self._get_usage_record(user_id)
        if self._rollover_if_needed(user, usage, status, now):
            user = self.repository.get_user(user_id)

        if status is None or self.reconciler is None:
            return None
        return self.reconciler.reconcile(user, status, now)

    def _get_usage_record(self, user_id: str) -> UsageRecord:
        usage = self.repository.get_usage(user_id)
        if usage is None:
            raise PersistenceError(f"No usage record for user {user_id}")
        return usage

    def _build(
        self,
        user_id: str,
        usage: Optional[UsageRecord] = None,
        reconciliation: Optional[ReconciliationResult] = None,
    ) -> MonthlyUsage:
        user = self.repository.get_user(user_id)
        if user is None:
            raise PersistenceError(f"No ledger record for user {user_id}")
        usage = usage or self._get_usage_record(user_id)
        return MonthlyUsage(
            user_id=user_id,
            tier=Tier.parse(user.subscription_tier),
            period=BillingPeriod(usage.current_period_start, usage.current_period_end),
            counters=usage.counters,
            daily_usage=usage.daily_usage,
            plans=self.plans,
            rates=self.rates,
            reconciliation=reconciliation,
        )

    async def get_usage(self, user_id: str) -> MonthlyUsage:
        """Current period usage for a user.

        Creates the record on first use, rolls the period over if it has
        ended and reconciles the tier. Calling it twice without tracking in
        between returns the same counters.

        Raises:
            PersistenceError: If the ledger cannot be read or written
        """
        async with self._locks.get(user_id):
            reconciliation = await self._refresh(user_id)
            return self._build(user_id, reconciliation=reconciliation)

    async def track_usage(
        self,
        user_id: str,
        delta: Union[UsageCounters, Mapping[str, float], None],
    ) -> MonthlyUsage:
        """Add a usage delta to the current period and today's entry.

        Missing fields count as zero. The increment is a single atomic
        update at the storage layer.

        Raises:
            PersistenceError: If the write fails. The billable action may
                already have happened, so this is never swallowed.
        """
        if not isinstance(delta, UsageCounters):
            delta = UsageCounters.from_partial(delta)

        async with self._locks.get(user_id):
            reconciliation = await self._refresh(user_id)
            if delta.is_empty:
                return self._build(user_id, reconciliation=reconciliation)
            day = self._clock().date().isoformat()
            usage = self.repository.increment_usage(user_id, delta, day)
            return self._build(user_id, usage=usage, reconciliation=reconciliation)

    async def has_quota(self, user_id: str) -> bool:
        """True while less than 100% of the credit limit is used."""
        usage = await self.get_usage(user_id)
        return usage.has_quota

    async def force_exceed_quota(self, user_id: str) -> MonthlyUsage:
        """Push usage to 100% of the limit with synthetic model-input tokens.

        Used by tests and support tooling to exercise the exhausted state.
        """
        usage = await self.get_usage(user_id)
        if not usage.has_quota:
            return usage

        rate = self.rates.llm_input_per_million
        if rate <= 0:
            logger.warning("Cannot exhaust quota for %s: model input is free", user_id)
            return usage

        remaining = usage.credit_limit - usage.costs.total_cost
        tokens = int(math.ceil(remaining / rate * ONE_MILLION))
        return await self.track_usage(user_id, UsageCounters(llm_input_tokens=tokens))

    async def track_transcription(self, user_id: str, audio_seconds: float) -> MonthlyUsage:
        """Record transcription of ``audio_seconds`` of audio."""
        return await self.track_usage(
            user_id, UsageCounters(transcription_minutes=float(audio_seconds or 0) / 60)
        )

    async def track_llm(
        self,
        user_id: str,
        input_text: Optional[str],
        output_text: Optional[str],
    ) -> MonthlyUsage:
        """Record a model exchange using estimated token counts."""
        return await self.track_llm_tokens(
            user_id, estimate_tokens(input_text), estimate_tokens(output_text)
        )

    async def track_llm_tokens(self, user_id: str, input_tokens: int, output_tokens: int) -> MonthlyUsage:
        return await self.track_usage(
            user_id,
            UsageCounters(llm_input_tokens=input_tokens, llm_output_tokens=output_tokens),
        )

    async def track_tts(self, user_id: str, text: Optional[str]) -> MonthlyUsage:
        return await self.track_usage(user_id, UsageCounters(tts_characters=len(text or "")))

    async def get_usage_in_tokens(self, user_id: str) -> TokenBalance:
        usage = await self.get_usage(user_id)
        return TokenBalance(
            used_tokens=usage.used_tokens,
            token_limit=usage.token_limit,
            percentage_used=usage.percentage_used,
        )

    async def set_tier(self, user_id: str, tier: Union[Tier, str]) -> MonthlyUsage:
        """Set the stored tier directly. The new limit applies immediately."""
        tier = Tier.parse(tier)
        async with self._locks.get(user_id):
            now = self._clock()
            user = self._ensure_user(user_id, None, now)
            self._rollover_if_needed(user, self._get_usage_record(user_id), None, now)
            self.repository.update_tier(user_id, tier.value, now)
            return self._build(user_id)

    async def delete_user_data(self, user_id: str) -> bool:
        """Remove every ledger row for a user.

        Returns:
            True if a record existed
        """
        async with self._locks.get(user_id):
            deleted = self.repository.delete_user(user_id)
        self._locks.discard(user_id)
        if deleted:
            logger.info("Deleted ledger data for user %s", user_id)
        return deleted

    async def aclose(self) -> None:
        if self.reconciler is not None:
            await self.reconciler.subscriptions.aclose()


def create_ledger(
    user_id: str,
    config: Optional[MeteringConfig] = None,
    db_path: str = DEFAULT_DB_PATH,
    mode: Optional[RuntimeMode] = None,
    api_key: Optional[str] = None,
    clock: Callable[[], datetime] = utcnow,
) -> UsageLedger:
    """Wire a ledger with subscription syncing for one customer.

    The provider key is read from the environment variable named in the
    provider config unless ``api_key`` is given.

    Raises:
        ValueError: If the real provider is selected without an API key
    """
    config = config or default_metering_config()
    provider_config = config.provider
    if api_key is None:
        api_key = os.environ.get(provider_config.api_key_env)

    provider = create_provider(
        mode or provider_config.mode,
        app_user_id=user_id,
        api_key=api_key,
        mapping=config.mapping,
        plans=config.plans,
        platform=provider_config.platform,
        base_url=provider_config.base_url,
    )

    repository = get_repository(db_path)
    repository.initialize_schema()
    cache = OfflineEntitlementCache(
        SqliteKeyValueStore(db_path),
        max_age=config.cache.max_age,
        clock=clock,
        key=f"{CACHE_KEY}:{user_id}",
    )
    subscriptions = SubscriptionService(
        provider,
        resolver=EntitlementResolver(config.mapping, clock=clock),
        cache=cache,
        timeout=provider_config.timeout_seconds,
        max_attempts=provider_config.max_attempts,
        refresh_seconds=provider_config.refresh_seconds,
        clock=clock,
    )
    reconciler = ReconciliationService(
        subscriptions, repository, policy=config.downgrade_policy, clock=clock
    )
    return UsageLedger(repository, reconciler, plans=config.plans, rates=config.pricing, clock=clock)
