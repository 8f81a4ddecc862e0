"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum

from pydantic import AwareDatetime, BaseModel, Field


class SubscriptionTier(str, Enum):
    """Subscription tier enumeration."""

    FREE = "FREE"
    PREMIUM = "PREMIUM"


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"  # auto-renew off, access kept until end_date
    EXPIRED = "EXPIRED"
    PAUSED = "PAUSED"


class PaymentType(str, Enum):
    """Payment transaction kind."""

    SUBSCRIPTION = "SUBSCRIPTION"
    ONE_TIME = "ONE_TIME"


class TransactionStatus(str, Enum):
    """Payment transaction status."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ActionKind(str, Enum):
    """Billable action performed against the image API."""

    TRY_ON = "try-on"
    POSE_CHANGE = "pose-change"
    CHAT_EDIT = "chat-edit"


class ConsumptionBucket(str, Enum):
    """Which bucket a consumption was (or would be) debited from."""

    SUBSCRIPTION = "subscription"
    CREDIT = "credit"


class BillingEventType(str, Enum):
    """External payment/subscription events delivered to the ledger."""

    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    CREDITS_GRANTED = "credits.granted"
    REFUND_PROCESSED = "refund.processed"


# ============================================================================
# Plan Models
# ============================================================================


class PlanResponse(BaseModel):
    """One subscription plan."""

    tier: SubscriptionTier
    name: str
    monthly_limit: int
    price: int
    currency: str
    description: str
    features: list[str]


class CreditPackageResponse(BaseModel):
    """One-time credit package offered for purchase."""

    count: int
    price: int
    currency: str
    popular: bool = False


class PlansResponse(BaseModel):
    """GET /v1/plans response."""

    plans: list[PlanResponse]
    credit_packages: list[CreditPackageResponse]


class SubscriptionResponse(BaseModel):
    """Subscription state after a lifecycle operation."""

    tier: SubscriptionTier
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    auto_renew: bool


# ============================================================================
# Usage Models
# ============================================================================


class AdmissionResponse(BaseModel):
    """POST /v1/usage/{user_id}/check response."""

    allowed: bool
    reason: str | None = None
    bucket: ConsumptionBucket | None = None


class ConsumeRequest(BaseModel):
    """POST /v1/usage/{user_id}/consume request body."""

    action: ActionKind = ActionKind.TRY_ON
    related_item_id: str | None = Field(None, max_length=255)
    atomic: bool = Field(
        default=False,
        description="Check admission and debit under one compare-and-set write",
    )


class ConsumeResponse(BaseModel):
    """POST /v1/usage/{user_id}/consume response."""

    bucket: ConsumptionBucket
    grant_id: str | None = None
    cost: int
    used: int
    limit: int
    credits_remaining: int


class UsageStatsResponse(BaseModel):
    """GET /v1/usage/{user_id} response."""

    used: int
    limit: int
    remaining: int
    one_time_credits: int
    percent_used: float
    tier: SubscriptionTier
    status: SubscriptionStatus
    days_until_reset: int


# ============================================================================
# Credit Models
# ============================================================================


class AddCreditGrantRequest(BaseModel):
    """POST /v1/usage/{user_id}/credits request body."""

    count: int = Field(..., gt=0, le=1000)
    price: int = Field(..., ge=0)
    external_payment_id: str | None = Field(None, max_length=255)


class CreditGrantResponse(BaseModel):
    """POST /v1/usage/{user_id}/credits response."""

    grant_id: str
    count: int
    expiry_date: datetime


# ============================================================================
# Rate Limit Models
# ============================================================================


class RateLimitWindowStats(BaseModel):
    """Snapshot of one rate-limit window."""

    window: str
    used: int
    remaining: int
    total: int
    reset_in_seconds: int


class RateLimitStatsResponse(BaseModel):
    """GET /v1/rate-limits response."""

    windows: list[RateLimitWindowStats]


# ============================================================================
# Webhook Models
# ============================================================================


class BillingEvent(BaseModel):
    """Payment/subscription event delivered by the payment collaborator."""

    event_id: str | None = Field(None, max_length=255)
    event_type: BillingEventType
    user_id: str = Field(..., min_length=1, max_length=255)
    external_subscription_id: str | None = Field(None, max_length=255)
    period_end: AwareDatetime | None = None
    count: int | None = Field(None, gt=0)
    price: int | None = Field(None, ge=0)
    payment_id: str | None = Field(None, max_length=255)
    related_payment_id: str | None = Field(None, max_length=255)


class WebhookResponse(BaseModel):
    """Webhook acknowledgement."""

    status: str
    event_id: str | None = None
    detail: str | None = None


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    storage_backend: str
    version: str


# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Body of every billing error response."""

    detail: str
    error: str
    retry_after_seconds: int | None = None
    window: str | None = None
    used: int | None = None
    limit: int | None = None
    tier: SubscriptionTier | None = None
