"""
Subscription service.

Answers "what tier is this customer on right now?" from the entitlement
provider, the offline cache, or a conservative free-tier default, in that
order. Also fronts the purchase flow (offerings, purchase, restore).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .entitlements import (
    EntitlementResolver,
    StatusSource,
    SubscriptionStatus,
    utcnow,
)
from .errors import (
    ConfigurationError,
    ProviderUnavailableError,
    PurchaseCancelledError,
    PurchaseFailedError,
)
from .log import ThrottledLogger
from .offline_cache import OfflineEntitlementCache
from ..sdk.providers import EntitlementProvider, ProductPackage

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 3


def is_transient(error: BaseException) -> bool:
    """Whether a provider error is worth retrying.

    Network failures and timeouts carry no status code; rate limiting and
    server errors are transient too. Client errors (bad key, unknown
    customer) are not.
    """
    if not isinstance(error, ProviderUnavailableError):
        return False
    status = error.status_code
    return status is None or status == 429 or status >= 500


class PurchaseOutcome(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PurchaseResult:
    """Outcome of a purchase or restore."""
    outcome: PurchaseOutcome
    status: Optional[SubscriptionStatus] = None


class SubscriptionService:
    """Resolves the customer's current subscription with graceful fallback.

    Args:
        provider: Entitlement provider for the current runtime mode
        resolver: Entitlement resolver (mapping + expiry rules)
        cache: Offline cache; written on every live answer, read on failure
        timeout: Per-call timeout in seconds
        max_attempts: Attempts per provider call for transient errors
        refresh_seconds: How long a live answer is reused before the
            provider is asked again (0 disables memoization)
        clock: Source of the current time
        retry_wait: tenacity wait strategy between attempts
        throttled_log: Logger for repetitive diagnostics
    """

    def __init__(
        self,
        provider: EntitlementProvider,
        resolver: Optional[EntitlementResolver] = None,
        cache: Optional[OfflineEntitlementCache] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        refresh_seconds: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
        retry_wait=None,
        throttled_log: Optional[ThrottledLogger] = None,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.provider = provider
        self.resolver = resolver or EntitlementResolver(clock=clock)
        self.cache = cache
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.refresh_seconds = refresh_seconds
        self._clock = clock
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)
        self._log = throttled_log or ThrottledLogger(logger, interval=300)
        self._live_status: Optional[SubscriptionStatus] = None
        self._live_at: Optional[datetime] = None

    async def _call(self, operation: Callable[[], Awaitable[T]], retry: bool = True) -> T:
        """Run a provider call with a timeout and bounded retries."""
        attempts = self.max_attempts if retry else 1
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=self._retry_wait,
            retry=retry_if_exception(is_transient),
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.wait_for(operation(), timeout=self.timeout)
                except asyncio.TimeoutError as e:
                    raise ProviderUnavailableError(
                        f"Entitlement provider timed out after {self.timeout}s"
                    ) from e

    def _remember(self, status: SubscriptionStatus) -> SubscriptionStatus:
        self._live_status = status
        self._live_at = self._clock()
        if self.cache is not None:
            self.cache.write(status)
        return status

    def _memoized(self) -> Optional[SubscriptionStatus]:
        if not self.refresh_seconds or self._live_status is None:
            return None
        age = (self._clock() - self._live_at).total_seconds()
        return self._live_status if age < self.refresh_seconds else None

    def invalidate(self) -> None:
        """Forget the memoized live answer."""
        self._live_status = None
        self._live_at = None

    async def get_current_subscription(self) -> SubscriptionStatus:
        """Current subscription status. Never raises for provider failures.

        Returns:
            A LIVE status from the provider, else a CACHE status from the
            offline cache, else free with ``source=FALLBACK``
        """
        memoized = self._memoized()
        if memoized is not None:
            return memoized

        try:
            entitlements = await self._call(self.provider.get_entitlements)
        except ProviderUnavailableError as e:
            logger.warning("Entitlement provider unavailable: %s", e)
            cached = self.cache.read() if self.cache is not None else None
            if cached is not None:
                self._log.info("source:cache", "Serving subscription status from offline cache")
                return cached
            self._log.warning("source:fallback", "No subscription data available, assuming free tier")
            return SubscriptionStatus.free(source=StatusSource.FALLBACK)

        status = self.resolver.resolve(entitlements, now=self._clock())
        self._log.info("source:live", "Serving subscription status from entitlement provider")
        return self._remember(status)

    async def get_offerings(self) -> List[ProductPackage]:
        """Packages available for purchase; empty if none are registered.

        Raises:
            ProviderUnavailableError: If the provider cannot be reached
        """
        try:
            packages = await self._call(self.provider.get_offerings)
        except ConfigurationError as e:
            logger.warning("No purchasable products available: %s", e)
            return []
        self._log.info("offerings", "Fetched %d offering packages", len(packages))
        return packages

    async def _find_package(self, product_id: str) -> ProductPackage:
        try:
            packages = await self.get_offerings()
        except ProviderUnavailableError as e:
            raise PurchaseFailedError(f"Could not load offerings: {e}") from e
        for package in packages:
            if product_id in (package.identifier, package.product_identifier):
                return package
        raise PurchaseFailedError(f"Product {product_id} is not available", retryable=False)

    async def purchase(
        self,
        product: Union[ProductPackage, str],
        receipt: Optional[str] = None,
    ) -> PurchaseResult:
        """Purchase a package (or a product id from the current offering).

        Purchases are never retried automatically.

        Raises:
            PurchaseFailedError: If the provider failed or the product is unknown
        """
        package = product if isinstance(product, ProductPackage) else await self._find_package(product)
        try:
            entitlements = await self._call(
                lambda: self.provider.purchase(package, receipt=receipt), retry=False
            )
        except PurchaseCancelledError:
            logger.info("Purchase of %s cancelled by user", package.product_identifier)
            return PurchaseResult(outcome=PurchaseOutcome.CANCELLED)
        except ProviderUnavailableError as e:
            raise PurchaseFailedError(f"Purchase of {package.product_identifier} failed: {e}") from e

        status = self._remember(self.resolver.resolve(entitlements, now=self._clock()))
        logger.info("Purchase of %s completed, tier is now %s", package.product_identifier, status.tier.value)
        return PurchaseResult(outcome=PurchaseOutcome.COMPLETED, status=status)

    async def restore_purchases(self) -> PurchaseResult:
        """Re-sync previous purchases from the store.

        Raises:
            PurchaseFailedError: If the provider cannot be reached
        """
        try:
            entitlements = await self._call(self.provider.restore_purchases)
        except ProviderUnavailableError as e:
            raise PurchaseFailedError(f"Restore failed: {e}") from e
        status = self._remember(self.resolver.resolve(entitlements, now=self._clock()))
        return PurchaseResult(outcome=PurchaseOutcome.COMPLETED, status=status)

    async def aclose(self) -> None:
        await self.provider.aclose()
