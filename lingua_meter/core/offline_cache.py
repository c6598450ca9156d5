"""
Offline entitlement cache.

Keeps the last subscription status confirmed by the provider so that quota
checks keep working while the device is offline. The cache never raises;
every failure degrades to "no cached data".
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .entitlements import StatusSource, SubscriptionStatus, utcnow
from .errors import PersistenceError

logger = logging.getLogger(__name__)

CACHE_KEY = "cached_subscription"
DEFAULT_MAX_AGE = timedelta(hours=24)


class OfflineEntitlementCache:
    """Time-boxed local mirror of the last resolved subscription status.

    Args:
        store: Key-value store with ``get``/``set``/``delete`` string methods
        max_age: Freshness window; older entries are ignored
        clock: Source of the current time
        key: Storage key of the snapshot
    """

    def __init__(
        self,
        store,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = utcnow,
        key: str = CACHE_KEY,
    ):
        self.store = store
        self.key = key
        self.max_age = max_age
        self._clock = clock

    def write(self, status: SubscriptionStatus) -> bool:
        """Store a snapshot with its timestamp and expiration date.

        Returns:
            True if the snapshot was stored
        """
        payload = {
            "subscription": status.to_dict(),
            "cached_at": self._clock().isoformat(),
            "valid_until": status.expiration_date.isoformat() if status.expiration_date else None,
        }
        try:
            self.store.set(self.key, json.dumps(payload))
        except (PersistenceError, TypeError, ValueError) as e:
            logger.warning("Could not cache subscription status: %s", e)
            return False
        return True

    def read(self) -> Optional[SubscriptionStatus]:
        """Return the cached status, or None if there is nothing trustworthy.

        A snapshot whose subscription has itself expired yields a free-tier
        status regardless of how recently it was cached. A snapshot older
        than ``max_age`` yields None so that callers retry the provider.
        """
        try:
            raw = self.store.get(self.key)
        except PersistenceError as e:
            logger.warning("Could not read cached subscription status: %s", e)
            return None
        if not raw:
            return None

        now = self._clock()
        try:
            data = json.loads(raw)
            valid_until = data.get("valid_until")
            if valid_until and datetime.fromisoformat(valid_until) < now:
                return SubscriptionStatus.free(source=StatusSource.CACHE)

            cached_at = datetime.fromisoformat(data["cached_at"])
            if now - cached_at > self.max_age:
                logger.info("Cached subscription status is stale (cached at %s)", cached_at)
                return None

            status = SubscriptionStatus.from_dict(data["subscription"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Cached subscription status is malformed: %s", e)
            return None

        return status.with_source(StatusSource.CACHE)

    def clear(self) -> None:
        try:
            self.store.delete(self.key)
        except PersistenceError as e:
            logger.warning("Could not clear cached subscription status: %s", e)
