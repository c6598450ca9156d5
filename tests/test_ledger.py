"""
Unit tests for the usage ledger.

Tests tracking, quota gating, lazy rollover and tier reconciliation through
the ledger's read path.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from lingua_meter.config.loader import DowngradePolicy
from lingua_meter.core.entitlements import EntitlementResolver
from lingua_meter.core.errors import PersistenceError
from lingua_meter.core.ledger import TokenBalance, UsageLedger
from lingua_meter.core.pricing import UsageCounters
from lingua_meter.core.reconciliation import ReconciliationAction, ReconciliationService
from lingua_meter.core.subscription import SubscriptionService
from lingua_meter.core.tiers import Tier
from lingua_meter.sdk.providers import (
    REVENUECAT_BASE_URL,
    RevenueCatProvider,
    SimulatedEntitlementProvider,
)
from lingua_meter.storage.repository import LedgerRepository

START = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now += delta


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def repository(tmp_path):
    repo = LedgerRepository(str(tmp_path / "ledger.db"))
    repo.initialize_schema()
    return repo


@pytest.fixture
def provider(clock):
    return SimulatedEntitlementProvider(clock=clock)


def build_ledger(repository, provider, clock, policy=DowngradePolicy.DEFERRED):
    subscriptions = SubscriptionService(
        provider,
        resolver=EntitlementResolver(clock=clock),
        clock=clock,
        retry_wait=wait_none(),
    )
    reconciler = ReconciliationService(subscriptions, repository, policy=policy, clock=clock)
    return UsageLedger(repository, reconciler, clock=clock)


@pytest.fixture
def ledger(repository, provider, clock):
    return build_ledger(repository, provider, clock)


class TestTracking:
    """Test usage accumulation."""

    @pytest.mark.asyncio
    async def test_first_use_initializes_free_user(self, ledger):
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.FREE
        assert usage.counters.is_empty
        assert usage.credit_limit == Decimal("0.50")
        assert usage.period.contains(START)

    @pytest.mark.asyncio
    async def test_first_use_takes_live_tier(self, ledger, provider):
        provider.grant(Tier.PREMIUM)
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.PREMIUM
        assert usage.token_limit == 750

    @pytest.mark.asyncio
    async def test_anchor_is_first_use_day(self, ledger, repository):
        await ledger.get_usage("u1")
        assert repository.get_user("u1").billing_anchor_day == 15

    @pytest.mark.asyncio
    async def test_tracking_is_additive(self, ledger):
        d1 = UsageCounters(0.5, 100, 200, 300)
        d2 = UsageCounters(0.25, 10, 20, 30)
        await ledger.track_usage("a", d1)
        split = await ledger.track_usage("a", d2)
        combined = await ledger.track_usage("b", d1 + d2)
        assert split.counters == combined.counters

    @pytest.mark.asyncio
    async def test_tracking_is_additive_for_decimal_fractions(self, ledger):
        await ledger.track_usage("a", UsageCounters(transcription_minutes=0.1))
        split = await ledger.track_usage("a", UsageCounters(transcription_minutes=0.2))
        combined = await ledger.track_usage(
            "b", UsageCounters(transcription_minutes=0.1) + UsageCounters(transcription_minutes=0.2)
        )
        assert split.counters == combined.counters
        assert split.counters.transcription_minutes == 0.3

    @pytest.mark.asyncio
    async def test_monthly_total_matches_daily_entries(self, ledger, clock):
        for minutes in (0.1, 0.2, 0.7):
            await ledger.track_usage("u1", UsageCounters(transcription_minutes=minutes))
            clock.advance(timedelta(days=1))
        await ledger.track_transcription("u1", 1)

        usage = await ledger.get_usage("u1")
        daily_total = UsageCounters()
        for entry in usage.daily_usage.values():
            daily_total = daily_total + entry
        assert len(usage.daily_usage) == 4
        assert daily_total == usage.counters

    @pytest.mark.asyncio
    async def test_partial_delta(self, ledger):
        usage = await ledger.track_usage("u1", {"tts_characters": 12})
        assert usage.counters == UsageCounters(tts_characters=12)
        assert usage.daily_usage == {"2024-06-15": UsageCounters(tts_characters=12)}

    @pytest.mark.asyncio
    async def test_empty_delta_records_nothing(self, ledger):
        usage = await ledger.track_usage("u1", None)
        assert usage.counters.is_empty
        assert usage.daily_usage == {}

    @pytest.mark.asyncio
    async def test_get_usage_is_idempotent(self, ledger):
        await ledger.track_usage("u1", UsageCounters(llm_input_tokens=1000))
        first = await ledger.get_usage("u1")
        second = await ledger.get_usage("u1")
        assert first.counters == second.counters
        assert first.period == second.period

    @pytest.mark.asyncio
    async def test_concurrent_tracking_loses_nothing(self, ledger):
        await asyncio.gather(*[
            ledger.track_usage("u1", UsageCounters(llm_input_tokens=10)) for _ in range(20)
        ])
        usage = await ledger.get_usage("u1")
        assert usage.counters.llm_input_tokens == 200

    @pytest.mark.asyncio
    async def test_convenience_trackers(self, ledger):
        await ledger.track_transcription("u1", 90)
        await ledger.track_llm("u1", "abcdef", "abc")
        await ledger.track_llm_tokens("u1", 10, 5)
        usage = await ledger.track_tts("u1", "hello")
        assert usage.counters == UsageCounters(
            transcription_minutes=1.5,
            llm_input_tokens=12,
            llm_output_tokens=6,
            tts_characters=5,
        )


class TestQuota:
    """Test percentage and quota gating."""

    @pytest.mark.asyncio
    async def test_free_tier_forty_then_hundred_percent(self, ledger):
        usage = await ledger.track_usage("u1", {"llm_input_tokens": 2_000_000})
        assert usage.costs.total_cost == Decimal("0.20")
        assert usage.percentage_used == 40
        assert await ledger.has_quota("u1") is True

        usage = await ledger.track_usage("u1", {"llm_input_tokens": 3_000_000})
        assert usage.costs.total_cost == Decimal("0.50")
        assert usage.percentage_used == 100
        assert await ledger.has_quota("u1") is False

    @pytest.mark.asyncio
    async def test_percentage_capped(self, ledger):
        usage = await ledger.track_usage("u1", {"tts_characters": 10_000_000})
        assert usage.percentage_used == 100
        assert usage.remaining_credits == Decimal("0")

    @pytest.mark.asyncio
    async def test_force_exceed_quota(self, ledger):
        await ledger.track_usage("u1", {"transcription_minutes": 10})
        usage = await ledger.force_exceed_quota("u1")
        assert usage.percentage_used == 100
        assert await ledger.has_quota("u1") is False

    @pytest.mark.asyncio
    async def test_force_exceed_when_already_exhausted(self, ledger):
        await ledger.force_exceed_quota("u1")
        before = await ledger.get_usage("u1")
        after = await ledger.force_exceed_quota("u1")
        assert after.counters == before.counters

    @pytest.mark.asyncio
    async def test_usage_in_tokens(self, ledger):
        await ledger.track_usage("u1", {"llm_input_tokens": 2_000_000})
        balance = await ledger.get_usage_in_tokens("u1")
        assert balance == TokenBalance(used_tokens=20, token_limit=50, percentage_used=40.0)
        assert balance.remaining_tokens == 30


class TestRollover:
    """Test lazy period rollover."""

    @pytest.mark.asyncio
    async def test_rollover_resets_once(self, ledger, clock):
        await ledger.track_usage("u1", {"llm_input_tokens": 1000})
        old = (await ledger.get_usage("u1")).period

        clock.now = old.end + timedelta(hours=1)
        new = await ledger.get_usage("u1")
        assert new.counters.is_empty
        assert new.daily_usage == {}
        assert new.period.start.date() == old.end.date() + timedelta(days=1)

        await ledger.track_usage("u1", {"llm_input_tokens": 5})
        again = await ledger.get_usage("u1")
        assert again.period == new.period
        assert again.counters.llm_input_tokens == 5

    @pytest.mark.asyncio
    async def test_rollover_after_long_absence(self, ledger, clock):
        await ledger.get_usage("u1")
        clock.advance(timedelta(days=100))
        usage = await ledger.get_usage("u1")
        assert usage.period.contains(clock.now)


class TestReconciliationThroughLedger:
    """Tier changes picked up on read."""

    @pytest.mark.asyncio
    async def test_upgrade_applies_immediately_without_refund(self, ledger, provider):
        await ledger.track_usage("u1", {"llm_input_tokens": 2_000_000})
        provider.grant(Tier.BASIC)
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.BASIC
        assert usage.reconciliation.action == ReconciliationAction.UPGRADED
        assert usage.counters.llm_input_tokens == 2_000_000
        assert usage.percentage_used == 8.0

    @pytest.mark.asyncio
    async def test_deferred_downgrade_waits_for_rollover(self, ledger, provider, clock):
        provider.grant(Tier.GOLD, expires_in=None)
        await ledger.track_usage("u1", {"llm_input_tokens": 1000})

        provider.revoke_all()
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.GOLD
        assert usage.reconciliation.action == ReconciliationAction.DOWNGRADE_DEFERRED
        assert usage.counters.llm_input_tokens == 1000

        clock.now = usage.period.end + timedelta(minutes=1)
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.FREE
        assert usage.counters.is_empty

    @pytest.mark.asyncio
    async def test_immediate_downgrade_resets_usage(self, repository, provider, clock):
        ledger = build_ledger(repository, provider, clock, policy=DowngradePolicy.IMMEDIATE)
        provider.grant(Tier.GOLD, expires_in=None)
        await ledger.track_usage("u1", {"llm_input_tokens": 1000})

        provider.revoke_all()
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.FREE
        assert usage.reconciliation.action == ReconciliationAction.DOWNGRADED
        assert usage.counters.is_empty

    @pytest.mark.asyncio
    async def test_fallback_never_mutates(self, ledger, provider):
        provider.grant(Tier.GOLD, expires_in=None)
        await ledger.get_usage("u1")

        provider.fail_next = 10
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.GOLD
        assert usage.reconciliation.action == ReconciliationAction.SKIPPED

    @pytest.mark.asyncio
    async def test_fallback_rollover_keeps_stored_tier(self, ledger, provider, clock):
        provider.grant(Tier.GOLD, expires_in=None)
        old = (await ledger.get_usage("u1")).period

        provider.fail_next = 10
        clock.now = old.end + timedelta(hours=1)
        usage = await ledger.get_usage("u1")
        assert usage.tier == Tier.GOLD
        assert usage.period.start > old.end


class TestAdministration:
    @pytest.mark.asyncio
    async def test_set_tier(self, repository, clock):
        ledger = UsageLedger(repository, clock=clock)
        usage = await ledger.set_tier("u1", "premium")
        assert usage.tier == Tier.PREMIUM
        assert usage.credit_limit == Decimal("7.50")

    @pytest.mark.asyncio
    async def test_ledger_without_reconciler(self, repository, clock):
        ledger = UsageLedger(repository, clock=clock)
        usage = await ledger.track_usage("u1", {"llm_output_tokens": 10})
        assert usage.tier == Tier.FREE
        assert usage.reconciliation is None

    @pytest.mark.asyncio
    async def test_delete_user_data(self, ledger, repository):
        await ledger.track_usage("u1", {"llm_output_tokens": 10})
        assert await ledger.delete_user_data("u1") is True
        assert repository.get_user("u1") is None
        assert await ledger.delete_user_data("u1") is False

    @pytest.mark.asyncio
    async def test_persistence_errors_propagate(self, tmp_path, clock):
        ledger = UsageLedger(LedgerRepository(str(tmp_path / "no" / "such" / "dir.db")), clock=clock)
        with pytest.raises(PersistenceError):
            await ledger.track_usage("u1", {"llm_input_tokens": 1})


class TestMalformedProviderPayload:
    """The quota gate keeps working when the provider answers with garbage."""

    @pytest.mark.asyncio
    async def test_quota_gate_falls_back(self, repository, clock):
        payload = {"subscriber": {"entitlements": {"gold_entitlement": {
            "product_identifier": "gold_tier3", "expires_date": "not-a-date"}}}}
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)),
            base_url=REVENUECAT_BASE_URL,
        )
        provider = RevenueCatProvider("u1", "secret", client=client, clock=clock)
        ledger = build_ledger(repository, provider, clock)

        assert await ledger.has_quota("u1") is True
        usage = await ledger.track_usage("u1", {"llm_input_tokens": 10})
        assert usage.tier == Tier.FREE
        assert usage.reconciliation.action == ReconciliationAction.SKIPPED
        await ledger.aclose()
