"""
Ledger Records - Persisted per-user usage ledger.

Each record is serialized as one JSON document keyed by user id.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.api import (
    ActionKind,
    PaymentType,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)


class Subscription(BaseModel):
    """Current subscription state."""

    model_config = ConfigDict(validate_assignment=True)

    tier: SubscriptionTier = SubscriptionTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: datetime
    end_date: datetime
    auto_renew: bool = False
    external_subscription_id: str | None = None


class UsageHistoryEntry(BaseModel):
    """One consumption within the current period."""

    timestamp: datetime
    action: ActionKind
    related_item_id: str | None = None
    cost: int = Field(0, ge=0)  # 0 when covered by the monthly quota


class UsageRecord(BaseModel):
    """Monthly quota counters for the current period."""

    model_config = ConfigDict(validate_assignment=True)

    period_key: str  # YYYY-MM
    used: int = Field(0, ge=0)
    limit: int = Field(..., ge=0)
    last_updated: datetime
    history: list[UsageHistoryEntry] = Field(default_factory=list)

    @property
    def has_quota(self) -> bool:
        """True while the monthly quota still covers a request."""
        return self.used < self.limit


class CreditGrant(BaseModel):
    """Purchased, time-boxed allotment of extra operations."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    count: int = Field(..., ge=0)
    purchase_price: int = Field(..., ge=0)
    purchase_date: datetime
    expiry_date: datetime
    external_payment_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """Grants expire at expiry_date (inclusive)."""
        return self.expiry_date <= now

    def is_available(self, now: datetime) -> bool:
        """Grant can still be consumed."""
        return self.count > 0 and not self.is_expired(now)


class PaymentTransaction(BaseModel):
    """Audit trail entry. Never consulted for admission."""

    id: str
    kind: PaymentType
    amount: int = 0
    currency: str = "INR"
    status: TransactionStatus = TransactionStatus.SUCCESS
    created_at: datetime
    description: str
    external_payment_id: str | None = None


class UsageLedger(BaseModel):
    """Complete billing state of one user."""

    user_id: str
    subscription: Subscription
    usage: UsageRecord
    credit_grants: list[CreditGrant] = Field(default_factory=list)
    transactions: list[PaymentTransaction] = Field(default_factory=list)
    # Never reset on rollover, unlike usage.history
    lifetime_uses: int = Field(0, ge=0)

    def available_credits(self, now: datetime) -> int:
        """Sum of unexpired credit grant counts."""
        return sum(grant.count for grant in self.credit_grants if not grant.is_expired(now))

    def find_grant(self, grant_id: str) -> CreditGrant | None:
        for grant in self.credit_grants:
            if grant.id == grant_id:
                return grant
        return None

    def find_grant_by_payment(self, payment_id: str) -> CreditGrant | None:
        for grant in self.credit_grants:
            if grant.external_payment_id == payment_id:
                return grant
        return None

    def payment_kind(self, payment_id: str) -> PaymentType | None:
        """What an external payment id paid for, from subscription state or the audit trail."""
        if self.subscription.external_subscription_id == payment_id:
            return PaymentType.SUBSCRIPTION
        for transaction in reversed(self.transactions):
            if transaction.external_payment_id == payment_id:
                return transaction.kind
        return None
