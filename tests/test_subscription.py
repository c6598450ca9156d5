"""
Unit tests for the subscription service.

Covers the live -> cache -> fallback chain, retries, timeouts and the
purchase flow.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from tenacity import wait_none

from lingua_meter.core.entitlements import StatusSource, SubscriptionStatus
from lingua_meter.core.errors import (
    ConfigurationError,
    ProviderUnavailableError,
    PurchaseFailedError,
)
from lingua_meter.core.offline_cache import OfflineEntitlementCache
from lingua_meter.core.subscription import (
    PurchaseOutcome,
    SubscriptionService,
    is_transient,
)
from lingua_meter.core.tiers import Tier
from lingua_meter.sdk.providers import (
    REVENUECAT_BASE_URL,
    ProductPackage,
    RevenueCatProvider,
    SimulatedEntitlementProvider,
)
from lingua_meter.storage.kv import SqliteKeyValueStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def provider(clock):
    return SimulatedEntitlementProvider(clock=clock)


@pytest.fixture
def cache(tmp_path, clock):
    return OfflineEntitlementCache(SqliteKeyValueStore(str(tmp_path / "kv.db")), clock=clock)


def make_service(provider, cache=None, clock=None, **kwargs):
    kwargs.setdefault("retry_wait", wait_none())
    return SubscriptionService(provider, cache=cache, clock=clock or (lambda: NOW), **kwargs)


class TestIsTransient:
    @pytest.mark.parametrize("status,expected", [(None, True), (429, True), (500, True), (503, True),
                                                 (401, False), (404, False)])
    def test_status_codes(self, status, expected):
        assert is_transient(ProviderUnavailableError("x", status_code=status)) is expected

    def test_other_errors(self):
        assert is_transient(ValueError("x")) is False


class TestGetCurrentSubscription:
    """Test the fallback chain."""

    @pytest.mark.asyncio
    async def test_live_status(self, provider, cache, clock):
        provider.grant(Tier.PREMIUM)
        status = await make_service(provider, cache, clock).get_current_subscription()
        assert status.tier == Tier.PREMIUM
        assert status.source == StatusSource.LIVE

    @pytest.mark.asyncio
    async def test_live_status_written_to_cache(self, provider, cache, clock):
        provider.grant(Tier.GOLD)
        await make_service(provider, cache, clock).get_current_subscription()
        assert cache.read().tier == Tier.GOLD

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, provider, cache, clock):
        provider.grant(Tier.BASIC)
        provider.fail_next = 2
        status = await make_service(provider, cache, clock, max_attempts=3).get_current_subscription()
        assert status.tier == Tier.BASIC
        assert provider.calls == 3

    @pytest.mark.asyncio
    async def test_falls_back_to_cache(self, provider, cache, clock):
        cache.write(SubscriptionStatus(tier=Tier.GOLD, expiration_date=NOW + timedelta(days=3), is_active=True))
        provider.fail_next = 3
        status = await make_service(provider, cache, clock, max_attempts=3).get_current_subscription()
        assert status.tier == Tier.GOLD
        assert status.source == StatusSource.CACHE

    @pytest.mark.asyncio
    async def test_falls_back_to_free(self, provider, cache, clock):
        provider.fail_next = 3
        status = await make_service(provider, cache, clock, max_attempts=3).get_current_subscription()
        assert status.tier == Tier.FREE
        assert status.source == StatusSource.FALLBACK
        assert status.is_confirmed is False

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self, cache, clock):
        provider = AsyncMock()
        provider.get_entitlements.side_effect = ProviderUnavailableError("unauthorized", status_code=401)
        status = await make_service(provider, cache, clock, max_attempts=3).get_current_subscription()
        assert status.source == StatusSource.FALLBACK
        assert provider.get_entitlements.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_unavailable(self, provider, cache, clock):
        provider.delay = 0.2
        service = make_service(provider, cache, clock, timeout=0.01, max_attempts=2)
        status = await service.get_current_subscription()
        assert status.source == StatusSource.FALLBACK
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_memoizes_within_refresh_window(self, provider, cache, clock):
        provider.grant(Tier.BASIC)
        service = make_service(provider, cache, clock, refresh_seconds=60)
        await service.get_current_subscription()
        provider.grant(Tier.GOLD)
        assert (await service.get_current_subscription()).tier == Tier.BASIC
        assert provider.calls == 1

        clock.now = NOW + timedelta(seconds=61)
        assert (await service.get_current_subscription()).tier == Tier.GOLD

    @pytest.mark.asyncio
    async def test_invalidate(self, provider, clock):
        service = make_service(provider, clock=clock, refresh_seconds=60)
        await service.get_current_subscription()
        service.invalidate()
        await service.get_current_subscription()
        assert provider.calls == 2

    def test_rejects_bad_settings(self, provider):
        with pytest.raises(ValueError):
            SubscriptionService(provider, timeout=0)
        with pytest.raises(ValueError):
            SubscriptionService(provider, max_attempts=0)


class TestOfferingsAndPurchases:
    """Test the purchase flow outcomes."""

    @pytest.mark.asyncio
    async def test_offerings(self, provider):
        packages = await make_service(provider).get_offerings()
        assert len(packages) == 3

    @pytest.mark.asyncio
    async def test_configuration_error_yields_empty_offerings(self):
        provider = AsyncMock()
        provider.get_offerings.side_effect = ConfigurationError("no products")
        assert await make_service(provider).get_offerings() == []

    @pytest.mark.asyncio
    async def test_purchase_by_product_id(self, provider, cache, clock):
        result = await make_service(provider, cache, clock).purchase("gold_tier3")
        assert result.outcome == PurchaseOutcome.COMPLETED
        assert result.status.tier == Tier.GOLD
        assert cache.read().tier == Tier.GOLD

    @pytest.mark.asyncio
    async def test_cancelled_purchase_is_not_an_error(self, provider):
        provider.cancel_next_purchase = True
        result = await make_service(provider).purchase(ProductPackage("gold_tier3", "gold_tier3"))
        assert result.outcome == PurchaseOutcome.CANCELLED
        assert result.status is None

    @pytest.mark.asyncio
    async def test_provider_failure_is_retryable_purchase_error(self, provider):
        provider.fail_next = 1
        with pytest.raises(PurchaseFailedError) as exc_info:
            await make_service(provider).purchase(ProductPackage("gold_tier3", "gold_tier3"))
        assert exc_info.value.retryable is True
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_product(self, provider):
        with pytest.raises(PurchaseFailedError) as exc_info:
            await make_service(provider).purchase("platinum_tier")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_restore_purchases(self, provider):
        provider.grant(Tier.PREMIUM)
        result = await make_service(provider).restore_purchases()
        assert result.outcome == PurchaseOutcome.COMPLETED
        assert result.status.tier == Tier.PREMIUM

    @pytest.mark.asyncio
    async def test_restore_failure(self, provider):
        provider.fail_next = 5
        with pytest.raises(PurchaseFailedError):
            await make_service(provider, max_attempts=2).restore_purchases()


MALFORMED_SUBSCRIBER = {"subscriber": {"entitlements": {"gold_entitlement": {
    "product_identifier": "gold_tier3", "expires_date": "not-a-date"}}}}


def revenuecat(payload, calls):
    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=payload)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=REVENUECAT_BASE_URL)
    return RevenueCatProvider("user-1", "secret", client=client, clock=lambda: NOW)


class TestMalformedProviderPayload:
    """A payload of the wrong shape degrades like an outage, without retries."""

    @pytest.mark.asyncio
    async def test_falls_back_to_free(self):
        calls = []
        service = make_service(revenuecat(MALFORMED_SUBSCRIBER, calls), max_attempts=3)
        status = await service.get_current_subscription()
        assert status.tier == Tier.FREE
        assert status.source == StatusSource.FALLBACK
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_cache(self, cache, clock):
        cache.write(SubscriptionStatus(tier=Tier.BASIC, expiration_date=NOW + timedelta(days=3), is_active=True))
        service = make_service(revenuecat(MALFORMED_SUBSCRIBER, []), cache, clock)
        status = await service.get_current_subscription()
        assert status.tier == Tier.BASIC
        assert status.source == StatusSource.CACHE

    @pytest.mark.asyncio
    async def test_purchase_is_retryable_failure(self):
        provider = revenuecat(MALFORMED_SUBSCRIBER, [])
        with pytest.raises(PurchaseFailedError) as exc_info:
            await make_service(provider).purchase(ProductPackage("p", "gold_tier3"), receipt="token")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_purchase_without_receipt_is_not_cancellation(self):
        calls = []
        provider = revenuecat(MALFORMED_SUBSCRIBER, calls)
        with pytest.raises(PurchaseFailedError) as exc_info:
            await make_service(provider).purchase(ProductPackage("p", "gold_tier3"))
        assert exc_info.value.retryable is False
        assert calls == []
