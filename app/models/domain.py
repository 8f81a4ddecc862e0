"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field

from app.models.api import (
    BillingEventType,
    ConsumptionBucket,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.models.ledger import UsageHistoryEntry, UsageLedger


@dataclass(frozen=True)
class Plan:
    """Subscription plan. Features are descriptive only."""

    tier: SubscriptionTier
    name: str
    monthly_limit: int
    price: int
    description: str
    features: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate plan constraints."""
        if self.monthly_limit < 0:
            raise ValueError(f"Monthly limit cannot be negative: {self.monthly_limit}")
        if self.price < 0:
            raise ValueError(f"Plan price cannot be negative: {self.price}")


@dataclass(frozen=True)
class RateLimitConfig:
    """One rate-limit window."""

    name: str
    max_requests: int
    window_ms: int
    storage_key: str

    def __post_init__(self) -> None:
        """Validate window constraints."""
        if self.max_requests <= 0:
            raise ValueError(f"max_requests must be positive: {self.max_requests}")
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be positive: {self.window_ms}")
        if not self.storage_key:
            raise ValueError("storage_key cannot be empty")


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of checking one window."""

    allowed: bool
    remaining: int
    retry_after_seconds: int


@dataclass(frozen=True)
class RateLimitStats:
    """Read-only snapshot of one window."""

    used: int
    remaining: int
    total: int
    reset_in_seconds: int


@dataclass(frozen=True)
class AdmissionDecision:
    """Whether one more billable operation is allowed right now."""

    allowed: bool
    reason: str | None = None
    bucket: ConsumptionBucket | None = None


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of a successful debit."""

    bucket: ConsumptionBucket
    entry: UsageHistoryEntry
    used: int
    limit: int
    credits_remaining: int
    tier: SubscriptionTier
    grant_id: str | None = None


@dataclass(frozen=True)
class UsageStats:
    """Display projection of a ledger."""

    used: int
    limit: int
    remaining: int
    one_time_credits: int
    percent_used: float
    tier: SubscriptionTier
    status: SubscriptionStatus
    days_until_reset: int


@dataclass(frozen=True)
class VersionedLedger:
    """Ledger together with the store version it was read at."""

    ledger: UsageLedger
    version: int


@dataclass(frozen=True)
class EventOutcome:
    """Result of applying one billing event to a ledger."""

    event_type: BillingEventType
    user_id: str
    applied: bool
    detail: str
