"""
Error taxonomy for metering and entitlement handling.

Each error names a recovery policy: some are recovered close to where they
occur, others must reach the caller.
"""

from typing import Optional


class MeteringError(Exception):
    """Base class for all Lingua Meter errors."""


class ConfigurationError(MeteringError):
    """The entitlement provider has no products registered.

    Recoverable: callers log it and treat it as "no packages available".
    """


class ProviderUnavailableError(MeteringError):
    """The entitlement provider could not be reached or answered badly.

    Recoverable via the offline cache, else the free tier.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(MeteringError):
    """A ledger read or write failed.

    Never swallowed: a billable action may have proceeded without being
    counted, so the caller decides whether to retry the whole operation.
    """


class PurchaseCancelledError(MeteringError):
    """The user backed out of the purchase flow. Not a failure."""


class PurchaseFailedError(MeteringError):
    """A purchase could not be completed and may be retried by the user."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class QuotaExceededError(MeteringError):
    """Raised when a billable operation is attempted without quota."""

    def __init__(self, user_id: str, percentage_used: float):
        super().__init__(
            f"Monthly quota exhausted for user {user_id} "
            f"({percentage_used:.1f}% used)"
        )
        self.user_id = user_id
        self.percentage_used = percentage_used


class ConfigFileError(ConfigurationError, ValueError):
    """A metering configuration file is invalid."""
