"""
Tests for domain models, ledger records and the plan catalog.
"""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from app.models.api import PaymentType, SubscriptionStatus, SubscriptionTier
from app.models.domain import Plan, RateLimitConfig
from app.models.ledger import (
    CreditGrant,
    PaymentTransaction,
    Subscription,
    UsageLedger,
    UsageRecord,
)
from app.services.plans import (
    CREDIT_PACKAGES,
    CreditPackage,
    build_plans,
    effective_tier,
    get_package,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class TestPlan:
    """Tests for Plan domain model."""

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError, match="Monthly limit"):
            Plan(
                tier=SubscriptionTier.FREE,
                name="Free",
                monthly_limit=-1,
                price=0,
                description="",
            )

    def test_zero_limit_allowed(self):
        plan = Plan(
            tier=SubscriptionTier.FREE, name="Free", monthly_limit=0, price=0, description=""
        )
        assert plan.monthly_limit == 0


class TestRateLimitConfig:
    """Tests for RateLimitConfig validation."""

    @pytest.mark.parametrize(
        ("max_requests", "window_ms", "storage_key"),
        [(0, 60_000, "k"), (10, 0, "k"), (10, 60_000, "")],
    )
    def test_invalid_config_rejected(self, max_requests, window_ms, storage_key):
        with pytest.raises(ValueError):
            RateLimitConfig(
                name="minute",
                max_requests=max_requests,
                window_ms=window_ms,
                storage_key=storage_key,
            )


class TestCreditGrant:
    """Tests for CreditGrant expiry rules."""

    def grant(self, count: int = 5) -> CreditGrant:
        return CreditGrant(
            id="grant_1",
            count=count,
            purchase_price=129,
            purchase_date=NOW,
            expiry_date=NOW + timedelta(days=30),
        )

    def test_expiry_is_inclusive(self):
        grant = self.grant()
        assert not grant.is_expired(NOW + timedelta(days=30, microseconds=-1))
        assert grant.is_expired(NOW + timedelta(days=30))

    def test_depleted_grant_is_not_available(self):
        assert not self.grant(count=0).is_available(NOW)
        assert self.grant(count=1).is_available(NOW)

    def test_negative_count_rejected(self):
        grant = self.grant()
        with pytest.raises(ValidationError):
            grant.count = -1


class TestUsageRecord:
    """Tests for UsageRecord counters."""

    def test_has_quota(self):
        record = UsageRecord(period_key="2026-03", used=2, limit=3, last_updated=NOW)
        assert record.has_quota
        record.used = 3
        assert not record.has_quota


class TestPlanCatalog:
    """Tests for the plan catalog and credit packages."""

    def test_build_plans_uses_settings(self, test_settings):
        plans = build_plans(test_settings)

        assert plans[SubscriptionTier.FREE].monthly_limit == 3
        assert plans[SubscriptionTier.FREE].price == 0
        assert plans[SubscriptionTier.PREMIUM].monthly_limit == 25
        assert "25 try-ons per month" in plans[SubscriptionTier.PREMIUM].features

    @pytest.mark.parametrize(
        ("tier", "status", "expected"),
        [
            (SubscriptionTier.PREMIUM, SubscriptionStatus.ACTIVE, SubscriptionTier.PREMIUM),
            (SubscriptionTier.PREMIUM, SubscriptionStatus.CANCELLED, SubscriptionTier.PREMIUM),
            (SubscriptionTier.PREMIUM, SubscriptionStatus.PAUSED, SubscriptionTier.FREE),
            (SubscriptionTier.FREE, SubscriptionStatus.EXPIRED, SubscriptionTier.FREE),
        ],
    )
    def test_effective_tier(self, tier, status, expected):
        assert effective_tier(tier, status) == expected

    def test_packages(self):
        assert [package.count for package in CREDIT_PACKAGES] == [1, 5, 10]
        assert get_package(5).price == 129
        assert get_package(5).popular

    def test_unknown_package(self):
        with pytest.raises(ValueError, match="Unknown credit package"):
            get_package(7)

    def test_invalid_package_rejected(self):
        with pytest.raises(ValueError):
            CreditPackage(count=0, price=10)


class TestUsageLedger:
    """Tests for UsageLedger lookups."""

    def ledger(self) -> UsageLedger:
        return UsageLedger(
            user_id="u1",
            subscription=Subscription(
                tier=SubscriptionTier.PREMIUM,
                start_date=NOW,
                end_date=NOW + timedelta(days=30),
                external_subscription_id="sub_1",
            ),
            usage=UsageRecord(period_key="2026-03", used=0, limit=25, last_updated=NOW),
            transactions=[
                PaymentTransaction(
                    id="txn_1",
                    kind=PaymentType.ONE_TIME,
                    created_at=NOW,
                    description="Purchased 5 try-on credits",
                    external_payment_id="pay_1",
                )
            ],
        )

    def test_payment_kind(self):
        ledger = self.ledger()

        assert ledger.payment_kind("sub_1") == PaymentType.SUBSCRIPTION
        assert ledger.payment_kind("pay_1") == PaymentType.ONE_TIME
        assert ledger.payment_kind("pay_2") is None
