"""
Entitlement resolution.

Maps the entitlement provider's view of a customer (a set of entitlement
slots) onto exactly one internal tier.

Resolution rules, in order:
1. Expiry wins - if any entitlement has an expiration date in the past the
   whole subscription is treated as expired and resolves to free, whatever
   other slots claim to be active.
2. Highest tier wins - active entitlements are checked gold -> premium ->
   basic and the first one found decides the tier.
3. Nothing active resolves to free with ``is_active=False``.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .tiers import PAID_TIERS_DESCENDING, Tier


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusSource(Enum):
    """Where a subscription status came from."""
    LIVE = "live"          # Confirmed by the entitlement provider
    CACHE = "cache"        # Served from the offline cache
    FALLBACK = "fallback"  # Conservative default, nothing confirmed


@dataclass(frozen=True)
class Entitlement:
    """One entitlement slot as reported by the provider."""
    identifier: str
    product_identifier: str
    expiration_date: Optional[datetime] = None
    will_renew: Optional[bool] = True
    is_active: bool = True

    def is_expired(self, now: datetime) -> bool:
        return self.expiration_date is not None and self.expiration_date < now


@dataclass(frozen=True)
class SubscriptionStatus:
    """The resolved subscription state for a customer."""
    tier: Tier
    expiration_date: Optional[datetime] = None
    is_active: bool = False
    is_cancelled: bool = False
    is_in_grace_period: bool = False
    source: StatusSource = StatusSource.LIVE

    @classmethod
    def free(cls, source: StatusSource = StatusSource.LIVE) -> "SubscriptionStatus":
        return cls(tier=Tier.FREE, source=source)

    @property
    def is_confirmed(self) -> bool:
        """True when the status reflects provider data rather than a default."""
        return self.source != StatusSource.FALLBACK

    def with_source(self, source: StatusSource) -> "SubscriptionStatus":
        return replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["source"] = self.source.value
        data["expiration_date"] = self.expiration_date.isoformat() if self.expiration_date else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SubscriptionStatus":
        """Rebuild a status from :meth:`to_dict` output.

        Raises:
            ValueError: If the tier is missing or the data is malformed
        """
        if not data.get("tier"):
            raise ValueError("subscription data has no tier")
        expiration = data.get("expiration_date")
        return cls(
            tier=Tier(data["tier"]),
            expiration_date=datetime.fromisoformat(expiration) if expiration else None,
            is_active=bool(data.get("is_active", False)),
            is_cancelled=bool(data.get("is_cancelled", False)),
            is_in_grace_period=bool(data.get("is_in_grace_period", False)),
            source=StatusSource(data.get("source", StatusSource.LIVE.value)),
        )


@dataclass(frozen=True)
class EntitlementMapping:
    """Static mapping from provider identifiers to tiers.

    Product identifiers differ between stores (App Store ids vs Play Store
    ``product:base-plan`` ids), so product ids are listed per tier and
    legacy ids are kept for subscriptions bought under older names.
    """
    entitlement_tiers: Dict[str, Tier] = field(default_factory=lambda: {
        "basic_entitlement": Tier.BASIC,
        "premium_entitlement": Tier.PREMIUM,
        "gold_entitlement": Tier.GOLD,
    })
    product_ids: Dict[Tier, Tuple[str, ...]] = field(default_factory=lambda: {
        Tier.BASIC: ("basic_tier3", "basic_tier:monthly"),
        Tier.PREMIUM: ("premium_tier3", "premium_tier:monthly"),
        Tier.GOLD: ("gold_tier3", "gold_tier:monthly"),
    })
    legacy_product_ids: Dict[str, Tier] = field(default_factory=lambda: {
        "basic_tier": Tier.BASIC,
        "premium_tier": Tier.PREMIUM,
        "gold_tier": Tier.GOLD,
    })

    def entitlement_for_tier(self, tier: Tier) -> Optional[str]:
        for identifier, mapped in self.entitlement_tiers.items():
            if mapped == tier:
                return identifier
        return None

    def primary_product_id(self, tier: Tier) -> Optional[str]:
        ids = self.product_ids.get(tier, ())
        return ids[0] if ids else None


def tier_from_product_identifier(product_id: Optional[str], mapping: EntitlementMapping) -> Tier:
    """Resolve a tier from a store product identifier.

    Tries, in priority order: (a) exact match against tier names and known
    product ids, (b) suffix match, (c) a tier name appearing anywhere in the
    id, (d) a legacy product id appearing anywhere in the id. Defaults to
    free when nothing matches.
    """
    if not product_id:
        return Tier.FREE
    candidate = product_id.strip().lower()

    def known_ids(tier: Tier) -> List[str]:
        return [tier.value] + [pid.lower() for pid in mapping.product_ids.get(tier, ())]

    # (a) exact
    for tier in PAID_TIERS_DESCENDING:
        if candidate in known_ids(tier):
            return tier

    # (b) suffix
    for tier in PAID_TIERS_DESCENDING:
        if any(candidate.endswith(known) for known in known_ids(tier)):
            return tier

    # (c) tier name as substring
    for tier in PAID_TIERS_DESCENDING:
        if tier.value in candidate:
            return tier

    # (d) legacy id as substring
    for legacy_id, tier in mapping.legacy_product_ids.items():
        if legacy_id.lower() in candidate:
            return tier

    return Tier.FREE


class EntitlementResolver:
    """Resolves a provider entitlement set to a single SubscriptionStatus.

    Grace periods are not modelled: a lapsed renewal goes straight to free,
    so ``is_in_grace_period`` is always False.
    """

    def __init__(
        self,
        mapping: Optional[EntitlementMapping] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.mapping = mapping or EntitlementMapping()
        self._clock = clock

    def tier_for(self, entitlement: Entitlement) -> Tier:
        tier = self.mapping.entitlement_tiers.get(entitlement.identifier)
        if tier is not None:
            return tier
        return tier_from_product_identifier(entitlement.product_identifier, self.mapping)

    def resolve(
        self,
        entitlements: Iterable[Entitlement],
        now: Optional[datetime] = None,
    ) -> SubscriptionStatus:
        """Resolve entitlements to a subscription status.

        Args:
            entitlements: Every entitlement slot the provider reports,
                active or not
            now: Reference time (defaults to the resolver's clock)

        Returns:
            SubscriptionStatus with ``source=LIVE``
        """
        now = now or self._clock()
        entitlements = list(entitlements)

        if any(e.is_expired(now) for e in entitlements):
            return SubscriptionStatus.free()

        active_by_tier: Dict[Tier, Entitlement] = {}
        for entitlement in entitlements:
            if not entitlement.is_active:
                continue
            active_by_tier.setdefault(self.tier_for(entitlement), entitlement)

        for tier in PAID_TIERS_DESCENDING:
            winner = active_by_tier.get(tier)
            if winner is None:
                continue
            return SubscriptionStatus(
                tier=tier,
                expiration_date=winner.expiration_date,
                is_active=True,
                is_cancelled=winner.will_renew is False,
                is_in_grace_period=False,
            )

        return SubscriptionStatus.free()
