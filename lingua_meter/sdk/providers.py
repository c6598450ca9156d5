"""
Entitlement provider clients.

A narrow async interface over the subscription backend, with one real
implementation (RevenueCat REST API) and one deterministic simulated
implementation for development builds and tests. Which one runs is decided
once at process start through :class:`RuntimeMode`.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx

from ..core.entitlements import Entitlement, EntitlementMapping, utcnow
from ..core.errors import (
    ConfigurationError,
    ProviderUnavailableError,
    PurchaseCancelledError,
    PurchaseFailedError,
)
from ..core.tiers import DEFAULT_PLANS, PlanTable, Tier

logger = logging.getLogger(__name__)

REVENUECAT_BASE_URL = "https://api.revenuecat.com/v1"

T = TypeVar("T")


class RuntimeMode(Enum):
    """Which provider implementation the process runs against."""
    REAL = "real"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class ProductPackage:
    """A purchasable package from the provider's current offering."""
    identifier: str
    product_identifier: str
    offering_identifier: str = "default"
    title: Optional[str] = None
    price: Optional[Decimal] = None
    currency_code: str = "USD"

    @property
    def price_string(self) -> str:
        return f"${self.price:,.2f}" if self.price is not None else "-"


class EntitlementProvider(ABC):
    """Interface every entitlement provider implements."""

    @abstractmethod
    async def get_entitlements(self) -> List[Entitlement]:
        """Every entitlement slot for the customer, active or not."""

    @abstractmethod
    async def get_offerings(self) -> List[ProductPackage]:
        """Packages in the current offering.

        Raises:
            ConfigurationError: If no products are registered
        """

    @abstractmethod
    async def purchase(self, package: ProductPackage, receipt: Optional[str] = None) -> List[Entitlement]:
        """Complete a purchase and return the customer's entitlements.

        Raises:
            PurchaseCancelledError: If the store flow was cancelled
            PurchaseFailedError: If the purchase cannot be completed
        """

    @abstractmethod
    async def restore_purchases(self) -> List[Entitlement]:
        """Re-sync previous purchases and return the customer's entitlements."""

    async def aclose(self) -> None:
        return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class RevenueCatProvider(EntitlementProvider):
    """RevenueCat REST API client.

    Args:
        app_user_id: RevenueCat app user id of the customer
        api_key: RevenueCat API key
        platform: Store platform sent as ``X-Platform`` (ios, android)
        base_url: API root
        client: Optional preconfigured ``httpx.AsyncClient``
        clock: Source of the current time
    """

    def __init__(
        self,
        app_user_id: str,
        api_key: str,
        platform: str = "ios",
        base_url: str = REVENUECAT_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not app_user_id or not app_user_id.strip():
            raise ValueError("app_user_id is required and cannot be empty")
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        self.app_user_id = app_user_id
        self.platform = platform
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "X-Platform": platform,
            "Content-Type": "application/json",
        }
        self._clock = clock

    async def _request(self, method: str, path: str, parse: Callable[[Any], T], **kwargs: Any) -> T:
        """Send a request and parse its JSON body with ``parse``.

        A body that does not have the expected shape is reported with the
        response's own status code, so it is not retried.
        """
        try:
            response = await self.client.request(method, path, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"RevenueCat request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderUnavailableError(
                f"RevenueCat returned HTTP {response.status_code} for {path}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderUnavailableError(f"RevenueCat returned invalid JSON for {path}") from e

        try:
            return parse(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailableError(
                f"RevenueCat returned an unexpected payload for {path}: {e!r}",
                status_code=response.status_code,
            ) from e

    def _entitlements_from_subscriber(self, payload: Dict[str, Any]) -> List[Entitlement]:
        subscriber = payload.get("subscriber") or {}
        subscriptions = subscriber.get("subscriptions") or {}
        now = self._clock()

        entitlements = []
        for identifier, info in (subscriber.get("entitlements") or {}).items():
            product_id = info.get("product_identifier") or ""
            expires = _parse_timestamp(info.get("expires_date"))
            subscription = subscriptions.get(product_id) or {}
            will_renew = (
                subscription.get("unsubscribe_detected_at") is None
                and subscription.get("billing_issues_detected_at") is None
            )
            entitlements.append(Entitlement(
                identifier=identifier,
                product_identifier=product_id,
                expiration_date=expires,
                will_renew=will_renew,
                is_active=expires is None or expires > now,
            ))
        return entitlements

    async def get_entitlements(self) -> List[Entitlement]:
        return await self._request(
            "GET", f"/subscribers/{self.app_user_id}", self._entitlements_from_subscriber
        )

    async def get_offerings(self) -> List[ProductPackage]:
        return await self._request(
            "GET", f"/subscribers/{self.app_user_id}/offerings", self._packages_from_offerings
        )

    def _packages_from_offerings(self, payload: Dict[str, Any]) -> List[ProductPackage]:
        current_id = payload.get("current_offering_id")
        offerings = payload.get("offerings") or []
        current = next((o for o in offerings if o.get("identifier") == current_id), None)
        if current is None or not current.get("packages"):
            raise ConfigurationError("No products registered in the current offering")

        return [
            ProductPackage(
                identifier=package["identifier"],
                product_identifier=package["platform_product_identifier"],
                offering_identifier=current["identifier"],
            )
            for package in current["packages"]
        ]

    async def purchase(self, package: ProductPackage, receipt: Optional[str] = None) -> List[Entitlement]:
        if not receipt:
            raise PurchaseFailedError(
                f"No store receipt for {package.product_identifier}", retryable=False
            )
        return await self._request("POST", "/receipts", self._entitlements_from_subscriber, json={
            "app_user_id": self.app_user_id,
            "fetch_token": receipt,
            "product_id": package.product_identifier,
        })

    async def restore_purchases(self) -> List[Entitlement]:
        return await self.get_entitlements()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class SimulatedEntitlementProvider(EntitlementProvider):
    """Deterministic in-memory provider.

    Starts with no entitlements (free tier). Supports failure injection
    (``fail_next``), artificial latency (``delay``) and cancelled purchases
    (``cancel_next_purchase``) so that fallback paths can be exercised.
    """

    def __init__(
        self,
        mapping: Optional[EntitlementMapping] = None,
        plans: Optional[PlanTable] = None,
        clock: Callable[[], datetime] = utcnow,
        entitlements: Optional[List[Entitlement]] = None,
    ):
        self.mapping = mapping or EntitlementMapping()
        self.plans = plans or DEFAULT_PLANS
        self._clock = clock
        self.entitlements: List[Entitlement] = list(entitlements or [])
        self.fail_next = 0
        self.delay = 0.0
        self.cancel_next_purchase = False
        self.calls = 0

    async def _simulate_call(self) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ProviderUnavailableError("Simulated provider outage")

    def grant(
        self,
        tier: Tier,
        expires_in: Optional[timedelta] = timedelta(days=30),
        will_renew: bool = True,
    ) -> Entitlement:
        """Give the customer an active entitlement for ``tier``."""
        identifier = self.mapping.entitlement_for_tier(tier) or f"{tier.value}_entitlement"
        entitlement = Entitlement(
            identifier=identifier,
            product_identifier=self.mapping.primary_product_id(tier) or tier.value,
            expiration_date=self._clock() + expires_in if expires_in is not None else None,
            will_renew=will_renew,
            is_active=True,
        )
        self.entitlements = [e for e in self.entitlements if e.identifier != identifier]
        self.entitlements.append(entitlement)
        return entitlement

    def revoke_all(self) -> None:
        self.entitlements = []

    async def get_entitlements(self) -> List[Entitlement]:
        await self._simulate_call()
        return list(self.entitlements)

    async def get_offerings(self) -> List[ProductPackage]:
        await self._simulate_call()
        packages = []
        for plan in self.plans.paid_plans():
            product_id = self.mapping.primary_product_id(plan.tier)
            if product_id is None:
                continue
            packages.append(ProductPackage(
                identifier=product_id,
                product_identifier=product_id,
                title=f"{plan.name} Plan",
                price=plan.price_amount,
            ))
        if not packages:
            raise ConfigurationError("No products configured for simulated offerings")
        return packages

    async def purchase(self, package: ProductPackage, receipt: Optional[str] = None) -> List[Entitlement]:
        await self._simulate_call()
        if self.cancel_next_purchase:
            self.cancel_next_purchase = False
            raise PurchaseCancelledError(f"Purchase of {package.product_identifier} cancelled")

        for tier, product_ids in self.mapping.product_ids.items():
            if package.product_identifier in product_ids:
                self.grant(tier)
                break
        else:
            logger.warning("Simulated purchase of unknown product %s", package.product_identifier)
        return list(self.entitlements)

    async def restore_purchases(self) -> List[Entitlement]:
        await self._simulate_call()
        return list(self.entitlements)


def create_provider(
    mode: RuntimeMode,
    app_user_id: str,
    api_key: Optional[str] = None,
    mapping: Optional[EntitlementMapping] = None,
    plans: Optional[PlanTable] = None,
    platform: str = "ios",
    base_url: str = REVENUECAT_BASE_URL,
) -> EntitlementProvider:
    """Build the provider for the process's runtime mode.

    Raises:
        ValueError: If REAL mode is requested without an API key
    """
    if mode == RuntimeMode.SIMULATED:
        logger.info("Using simulated entitlement provider")
        return SimulatedEntitlementProvider(mapping=mapping, plans=plans)
    if not api_key:
        raise ValueError("An API key is required for the real entitlement provider")
    return RevenueCatProvider(
        app_user_id=app_user_id,
        api_key=api_key,
        platform=platform,
        base_url=base_url,
    )
