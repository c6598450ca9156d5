"""
Tier reconciliation.

Keeps the tier stored in the ledger in line with the tier the entitlement
provider reports:

- Live tier higher than stored: upgrade immediately. Credits already used
  stay used; the higher ceiling applies at once.
- Live tier lower than stored: with ``DowngradePolicy.IMMEDIATE`` downgrade
  now and reset usage; with ``DowngradePolicy.DEFERRED`` keep the stored
  tier until the next period rollover adopts the live one.
- A FALLBACK status (provider and cache both failed) never changes stored
  state.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Union

from .entitlements import StatusSource, SubscriptionStatus, utcnow
from .period import current_period
from .subscription import PurchaseOutcome, PurchaseResult, SubscriptionService
from .tiers import Tier
from ..config.loader import DowngradePolicy
from ..sdk.providers import ProductPackage
from ..storage.models import UserRecord
from ..storage.repository import LedgerRepository

logger = logging.getLogger(__name__)


class ReconciliationAction(Enum):
    UNCHANGED = "unchanged"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    DOWNGRADE_DEFERRED = "downgrade_deferred"
    SKIPPED = "skipped"        # Status was a fallback default
    NO_RECORD = "no_record"    # User has no ledger record yet


@dataclass(frozen=True)
class ReconciliationResult:
    """What a reconciliation did for one user."""
    user_id: str
    action: ReconciliationAction
    stored_tier: Optional[Tier]
    live_tier: Tier
    source: StatusSource
    usage_reset: bool = False

    @property
    def changed(self) -> bool:
        return self.action in (ReconciliationAction.UPGRADED, ReconciliationAction.DOWNGRADED)


class UserLocks:
    """Per-user asyncio locks serializing ledger writes within a process."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def discard(self, user_id: str) -> None:
        lock = self._locks.get(user_id)
        if lock is not None and not lock.locked():
            del self._locks[user_id]


class ReconciliationService:
    """Applies live subscription status to stored ledger state."""

    def __init__(
        self,
        subscriptions: SubscriptionService,
        repository: LedgerRepository,
        policy: DowngradePolicy = DowngradePolicy.DEFERRED,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[UserLocks] = None,
    ):
        self.subscriptions = subscriptions
        self.repository = repository
        self.policy = policy
        self._clock = clock
        self.locks = locks or UserLocks()

    def reconcile(
        self,
        user: UserRecord,
        status: SubscriptionStatus,
        now: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """Reconcile one stored user record against a resolved status.

        Callers must hold the user's lock.

        Raises:
            PersistenceError: If the ledger update fails
        """
        now = now or self._clock()
        stored = Tier.parse(user.subscription_tier)
        live = status.tier

        def result(action: ReconciliationAction, usage_reset: bool = False) -> ReconciliationResult:
            return ReconciliationResult(
                user_id=user.user_id,
                action=action,
                stored_tier=stored,
                live_tier=live,
                source=status.source,
                usage_reset=usage_reset,
            )

        if not status.is_confirmed:
            return result(ReconciliationAction.SKIPPED)
        if live == stored:
            return result(ReconciliationAction.UNCHANGED)

        if live > stored:
            self.repository.update_tier(user.user_id, live.value, now)
            logger.info("Upgraded user %s from %s to %s", user.user_id, stored.value, live.value)
            return result(ReconciliationAction.UPGRADED)

        if self.policy == DowngradePolicy.DEFERRED:
            logger.info(
                "Deferring downgrade of user %s from %s to %s until period end",
                user.user_id, stored.value, live.value,
            )
            return result(ReconciliationAction.DOWNGRADE_DEFERRED)

        period = current_period(user.billing_anchor_day, now)
        self.repository.start_period(user.user_id, live.value, period, now)
        logger.info(
            "Downgraded user %s from %s to %s and reset usage",
            user.user_id, stored.value, live.value,
        )
        return result(ReconciliationAction.DOWNGRADED, usage_reset=True)

    def rollover_tier(self, user: UserRecord, status: Optional[SubscriptionStatus]) -> Tier:
        """Tier a new billing period starts under.

        A confirmed status wins; otherwise the stored tier carries over.
        """
        if status is not None and status.is_confirmed:
            return status.tier
        return Tier.parse(user.subscription_tier)

    async def reconcile_user(self, user_id: str) -> ReconciliationResult:
        """Fetch the live status and reconcile the user's stored tier."""
        status = await self.subscriptions.get_current_subscription()
        async with self.locks.get(user_id):
            user = self.repository.get_user(user_id)
            if user is None:
                return ReconciliationResult(
                    user_id=user_id,
                    action=ReconciliationAction.NO_RECORD,
                    stored_tier=None,
                    live_tier=status.tier,
                    source=status.source,
                )
            return self.reconcile(user, status)

    async def purchase(
        self,
        user_id: str,
        product: Union[ProductPackage, str],
        receipt: Optional[str] = None,
    ) -> PurchaseResult:
        """Purchase a product and apply the resulting tier to the ledger.

        Raises:
            PurchaseFailedError: If the purchase could not be completed
        """
        outcome = await self.subscriptions.purchase(product, receipt=receipt)
        if outcome.outcome == PurchaseOutcome.COMPLETED and outcome.status is not None:
            await self._apply(user_id, outcome.status)
        return outcome

    async def restore_purchases(self, user_id: str) -> PurchaseResult:
        outcome = await self.subscriptions.restore_purchases()
        if outcome.status is not None:
            await self._apply(user_id, outcome.status)
        return outcome

    async def _apply(self, user_id: str, status: SubscriptionStatus) -> None:
        async with self.locks.get(user_id):
            user = self.repository.get_user(user_id)
            if user is not None:
                self.reconcile(user, status)
