"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every billing exception carries an ErrorKind tag so callers can switch on
the kind of failure explicitly (see error_kind()).
"""

from enum import Enum

from app.models.api import SubscriptionTier


class ErrorKind(str, Enum):
    """Tag describing how a caller should react to a failure."""

    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
    LEDGER_INVARIANT_VIOLATION = "ledger_invariant_violation"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    STORAGE = "storage"
    WEBHOOK = "webhook"
    NOT_FOUND = "not_found"
    OTHER = "other"


class BillingError(Exception):
    """Base exception for all billing errors."""

    kind: ErrorKind = ErrorKind.OTHER


class RateLimitExceededError(BillingError):
    """Raised when an upstream rate-limit window has no room left."""

    kind = ErrorKind.RATE_LIMIT_EXCEEDED

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        window: str,
        remaining: int = 0,
    ) -> None:
        self.message = message
        self.retry_after_seconds = retry_after_seconds
        self.window = window
        self.remaining = remaining
        super().__init__(message)


class UsageLimitExceededError(BillingError):
    """Raised when neither the monthly quota nor purchased credits cover a request."""

    kind = ErrorKind.USAGE_LIMIT_EXCEEDED

    def __init__(
        self,
        used: int,
        limit: int,
        tier: SubscriptionTier,
        reason: str | None = None,
    ) -> None:
        self.used = used
        self.limit = limit
        self.tier = tier
        self.reason = reason
        super().__init__(
            reason or f"Usage limit reached. Used: {used}, Limit: {limit}, Tier: {tier.value}"
        )


class LedgerInvariantViolationError(UsageLimitExceededError):
    """
    Raised when consume() finds no capacity in either bucket.

    A caller that checked admission moments earlier should never see this;
    it means the re-check was skipped or two consumptions interleaved.
    """

    kind = ErrorKind.LEDGER_INVARIANT_VIOLATION

    def __init__(self, used: int, limit: int, tier: SubscriptionTier) -> None:
        super().__init__(
            used,
            limit,
            tier,
            reason=(
                f"No available credits to consume. Used: {used}, Limit: {limit}, "
                f"Tier: {tier.value}"
            ),
        )


class ConcurrencyError(BillingError):
    """Raised when concurrent modification detected."""

    kind = ErrorKind.CONCURRENCY_CONFLICT

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class StorageError(BillingError):
    """Raised when a ledger or rate-window record cannot be read or written."""

    kind = ErrorKind.STORAGE

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class CreditGrantNotFoundError(BillingError):
    """Raised when a credit grant doesn't exist on the user's ledger."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, user_id: str, grant_id: str) -> None:
        self.user_id = user_id
        self.grant_id = grant_id
        super().__init__(f"Credit grant not found: {user_id}/{grant_id}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    kind = ErrorKind.WEBHOOK

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


def error_kind(exc: BaseException) -> ErrorKind:
    """Map any exception to its ErrorKind (non-billing errors are OTHER)."""
    if isinstance(exc, BillingError):
        return exc.kind
    return ErrorKind.OTHER
