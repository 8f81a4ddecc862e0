"""
Usage Ledger Service - Monthly quota and purchased credits per user.

Decides whether a user may perform one more billable operation and, once the
operation has succeeded, debits exactly one unit: the monthly subscription
quota first, then the oldest purchased credit grant that is still valid.

Every write is a read-modify-write guarded by a version compare-and-set and
retried on conflict, so a ledger is never overwritten with stale state.
"""

import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import TypeVar
from uuid import uuid4

from app.config import Settings
from app.exceptions import (
    ConcurrencyError,
    CreditGrantNotFoundError,
    LedgerInvariantViolationError,
    UsageLimitExceededError,
)
from app.models.api import (
    ActionKind,
    ConsumptionBucket,
    PaymentType,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)
from app.models.domain import AdmissionDecision, ConsumptionResult, Plan, UsageStats
from app.models.ledger import (
    CreditGrant,
    PaymentTransaction,
    Subscription,
    UsageHistoryEntry,
    UsageLedger,
    UsageRecord,
)
from app.observability import get_logger, metrics, trace_operation
from app.services.clock import (
    SECONDS_PER_DAY,
    Clock,
    next_period_start,
    period_key,
    utc_now,
)
from app.services.plans import build_plans, effective_tier
from app.services.stores import LedgerStore

logger = get_logger(__name__)

T = TypeVar("T")


def evaluate_admission(ledger: UsageLedger, plan: Plan, now: datetime) -> AdmissionDecision:
    """
    Admission rule, in order: monthly quota, then unexpired credits.

    Pure: never mutates the ledger.
    """
    if ledger.usage.has_quota:
        return AdmissionDecision(allowed=True, bucket=ConsumptionBucket.SUBSCRIPTION)

    if ledger.available_credits(now) > 0:
        return AdmissionDecision(allowed=True, bucket=ConsumptionBucket.CREDIT)

    return AdmissionDecision(
        allowed=False,
        reason=(
            f"You've used all {plan.monthly_limit} try-ons included in the {plan.name} plan "
            "this month. Upgrade to Premium or purchase additional try-ons!"
        ),
    )


def apply_consumption(
    ledger: UsageLedger,
    action: ActionKind,
    related_item_id: str | None,
    now: datetime,
    credit_cost: int,
) -> ConsumptionResult:
    """
    Debit one unit from the ledger in place.

    Quota first; otherwise the first available grant in purchase order.

    Raises:
        LedgerInvariantViolationError: Neither bucket has capacity
    """
    usage = ledger.usage
    grant_id: str | None = None

    if usage.has_quota:
        usage.used += 1
        bucket = ConsumptionBucket.SUBSCRIPTION
        cost = 0
    else:
        grant = next((g for g in ledger.credit_grants if g.is_available(now)), None)
        if grant is None:
            raise LedgerInvariantViolationError(
                used=usage.used,
                limit=usage.limit,
                tier=ledger.subscription.tier,
            )
        grant.count -= 1
        grant_id = grant.id
        bucket = ConsumptionBucket.CREDIT
        cost = credit_cost

    entry = UsageHistoryEntry(
        timestamp=now,
        action=action,
        related_item_id=related_item_id,
        cost=cost,
    )
    usage.history.append(entry)
    usage.last_updated = now
    ledger.lifetime_uses += 1

    return ConsumptionResult(
        bucket=bucket,
        entry=entry,
        used=usage.used,
        limit=usage.limit,
        credits_remaining=ledger.available_credits(now),
        tier=ledger.subscription.tier,
        grant_id=grant_id,
    )


class UsageLedgerService:
    """
    Usage ledger operations.

    All write operations follow the pattern:
    1. Load (or create) the ledger and apply period/expiry corrections
    2. Mutate
    3. Save with compare-and-set on the version read in step 1
    4. On conflict, start over from step 1
    """

    def __init__(
        self,
        store: LedgerStore,
        plans: Mapping[SubscriptionTier, Plan],
        clock: Clock = utc_now,
        pay_per_use_price: int = 29,
        credit_expiry_days: int = 30,
        premium_period_days: int = 30,
        max_cas_retries: int = 5,
        currency: str = "INR",
    ) -> None:
        """Initialize ledger service with its store and plan catalog."""
        self.store = store
        self.plans = dict(plans)
        self.clock = clock
        self.pay_per_use_price = pay_per_use_price
        self.credit_expiry_days = credit_expiry_days
        self.premium_period_days = premium_period_days
        self.max_cas_retries = max(1, max_cas_retries)
        self.currency = currency

    @classmethod
    def from_settings(
        cls, store: LedgerStore, settings: Settings, clock: Clock = utc_now
    ) -> "UsageLedgerService":
        return cls(
            store=store,
            plans=build_plans(settings),
            clock=clock,
            pay_per_use_price=settings.pay_per_use_price,
            credit_expiry_days=settings.credit_expiry_days,
            premium_period_days=settings.premium_period_days,
            max_cas_retries=settings.ledger_max_cas_retries,
            currency=settings.currency,
        )

    def plan_for(self, ledger: UsageLedger) -> Plan:
        """Plan whose quota currently applies to the ledger."""
        subscription = ledger.subscription
        return self.plans[effective_tier(subscription.tier, subscription.status)]

    def new_ledger(self, user_id: str, now: datetime) -> UsageLedger:
        """FREE-tier defaults for a user seen for the first time."""
        return UsageLedger(
            user_id=user_id,
            subscription=Subscription(
                tier=SubscriptionTier.FREE,
                status=SubscriptionStatus.ACTIVE,
                start_date=now,
                end_date=now + timedelta(days=365),
                auto_renew=False,
            ),
            usage=UsageRecord(
                period_key=period_key(now),
                used=0,
                limit=self.plans[SubscriptionTier.FREE].monthly_limit,
                last_updated=now,
            ),
        )

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_ledger(self, user_id: str) -> UsageLedger:
        """
        Load the ledger, creating FREE defaults on first sight.

        Period rollover and subscription expiry are applied (and persisted)
        before the ledger is returned.
        """
        for attempt in range(1, self.max_cas_retries + 1):
            now = self.clock()
            ledger, version, changed, expired_at = await self._read(user_id, now)
            if not changed:
                return ledger
            try:
                await self.store.save(ledger, version)
                self._record_expiry(user_id, expired_at)
                return ledger
            except ConcurrencyError:
                metrics.record_ledger_conflict("get_ledger")
                if attempt == self.max_cas_retries:
                    raise
        raise ConcurrencyError(f"ledger:{user_id}")  # pragma: no cover

    def can_consume(self, ledger: UsageLedger) -> AdmissionDecision:
        """Admission check against an already loaded ledger."""
        decision = evaluate_admission(ledger, self.plan_for(ledger), self.clock())
        metrics.record_admission(
            decision.allowed, decision.bucket.value if decision.bucket else None
        )
        if not decision.allowed:
            logger.info(
                "usage_admission_denied",
                user_id=ledger.user_id,
                used=ledger.usage.used,
                limit=ledger.usage.limit,
                tier=ledger.subscription.tier.value,
            )
        return decision

    async def check_admission(self, user_id: str) -> AdmissionDecision:
        """Load the ledger and check whether one more operation is allowed."""
        return self.can_consume(await self.get_ledger(user_id))

    async def get_usage_stats(self, user_id: str) -> UsageStats:
        """Display projection of the user's current usage."""
        ledger = await self.get_ledger(user_id)
        now = self.clock()
        used = ledger.usage.used
        limit = ledger.usage.limit
        seconds_left = (next_period_start(now) - now).total_seconds()
        return UsageStats(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            one_time_credits=ledger.available_credits(now),
            percent_used=(used / limit) * 100 if limit > 0 else 0.0,
            tier=ledger.subscription.tier,
            status=ledger.subscription.status,
            days_until_reset=-int(-seconds_left // SECONDS_PER_DAY),
        )

    # ========================================================================
    # Consumption
    # ========================================================================

    async def consume(
        self,
        user_id: str,
        action: ActionKind,
        related_item_id: str | None = None,
    ) -> ConsumptionResult:
        """
        Debit one unit after the billable operation has already succeeded.

        Raises:
            LedgerInvariantViolationError: No capacity in either bucket
        """
        with trace_operation("ledger.consume", user_id=user_id, action=action.value):
            try:
                result = await self._mutate(
                    user_id,
                    "consume",
                    lambda ledger, now: apply_consumption(
                        ledger, action, related_item_id, now, self.pay_per_use_price
                    ),
                )
            except LedgerInvariantViolationError as exc:
                logger.error(
                    "ledger_invariant_violation",
                    user_id=user_id,
                    used=exc.used,
                    limit=exc.limit,
                    tier=exc.tier.value,
                    action=action.value,
                )
                metrics.record_error(type(exc).__name__, "consume")
                raise

        self._log_consumption(user_id, result)
        return result

    async def try_consume(
        self,
        user_id: str,
        action: ActionKind,
        related_item_id: str | None = None,
    ) -> ConsumptionResult:
        """
        Admission check and debit under one compare-and-set write.

        Safe with several concurrent writers for the same user.

        Raises:
            UsageLimitExceededError: Neither bucket has capacity
        """

        def debit(ledger: UsageLedger, now: datetime) -> ConsumptionResult:
            decision = evaluate_admission(ledger, self.plan_for(ledger), now)
            if not decision.allowed:
                raise UsageLimitExceededError(
                    used=ledger.usage.used,
                    limit=ledger.usage.limit,
                    tier=ledger.subscription.tier,
                    reason=decision.reason,
                )
            return apply_consumption(ledger, action, related_item_id, now, self.pay_per_use_price)

        with trace_operation("ledger.try_consume", user_id=user_id, action=action.value):
            result = await self._mutate(user_id, "try_consume", debit)

        self._log_consumption(user_id, result)
        return result

    def _log_consumption(self, user_id: str, result: ConsumptionResult) -> None:
        metrics.record_consumption(result.bucket.value, result.tier.value)
        logger.info(
            "usage_consumed",
            user_id=user_id,
            bucket=result.bucket.value,
            grant_id=result.grant_id,
            action=result.entry.action.value,
            used=result.used,
            limit=result.limit,
            credits_remaining=result.credits_remaining,
        )

    # ========================================================================
    # Subscription lifecycle
    # ========================================================================

    async def grant_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier = SubscriptionTier.PREMIUM,
        external_subscription_id: str | None = None,
        period_end: datetime | None = None,
        amount: int | None = None,
    ) -> Subscription:
        """
        Activate a subscription.

        The quota ceiling follows the new tier; usage already counted this
        period is kept.
        """
        if period_end is not None and period_end <= self.clock():
            raise ValueError(f"period_end must be in the future: {period_end.isoformat()}")

        plan = self.plans[tier]

        def grant(ledger: UsageLedger, now: datetime) -> Subscription:
            ledger.subscription = Subscription(
                tier=tier,
                status=SubscriptionStatus.ACTIVE,
                start_date=now,
                end_date=period_end or now + timedelta(days=self.premium_period_days),
                auto_renew=True,
                external_subscription_id=external_subscription_id,
            )
            ledger.usage.limit = self.plan_for(ledger).monthly_limit
            self._append_transaction(
                ledger,
                now,
                PaymentType.SUBSCRIPTION,
                f"{plan.name} subscription activated",
                amount=plan.price if amount is None else amount,
                external_payment_id=external_subscription_id,
            )
            return ledger.subscription

        subscription = await self._mutate(user_id, "grant_subscription", grant)
        metrics.record_subscription_transition("activated")
        logger.info(
            "subscription_activated",
            user_id=user_id,
            tier=tier.value,
            end_date=subscription.end_date.isoformat(),
            external_subscription_id=external_subscription_id,
        )
        return subscription

    async def renew_subscription(
        self,
        user_id: str,
        period_end: datetime,
        amount: int | None = None,
    ) -> Subscription:
        """Extend a PREMIUM subscription to period_end (never shortens it)."""
        plan = self.plans[SubscriptionTier.PREMIUM]

        def renew(ledger: UsageLedger, now: datetime) -> Subscription:
            subscription = ledger.subscription
            if subscription.tier != SubscriptionTier.PREMIUM:
                subscription.tier = SubscriptionTier.PREMIUM
                subscription.start_date = now
                subscription.end_date = period_end
            else:
                subscription.end_date = max(subscription.end_date, period_end)
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.auto_renew = True
            ledger.usage.limit = self.plan_for(ledger).monthly_limit
            self._append_transaction(
                ledger,
                now,
                PaymentType.SUBSCRIPTION,
                f"{plan.name} subscription renewed",
                amount=plan.price if amount is None else amount,
                external_payment_id=subscription.external_subscription_id,
            )
            return subscription

        subscription = await self._mutate(user_id, "renew_subscription", renew)
        metrics.record_subscription_transition("renewed")
        logger.info(
            "subscription_renewed",
            user_id=user_id,
            end_date=subscription.end_date.isoformat(),
        )
        return subscription

    async def cancel_subscription(self, user_id: str) -> Subscription:
        """
        Turn off auto-renew. Access and quota stay until the period ends,
        when get_ledger() downgrades the ledger.
        """

        def cancel(ledger: UsageLedger, now: datetime) -> Subscription:
            subscription = ledger.subscription
            if subscription.tier != SubscriptionTier.PREMIUM:
                logger.warning("subscription_cancel_ignored", user_id=user_id, tier="FREE")
                return subscription
            subscription.auto_renew = False
            subscription.status = SubscriptionStatus.CANCELLED
            self._append_transaction(
                ledger,
                now,
                PaymentType.SUBSCRIPTION,
                "Premium subscription cancelled - will expire at end of billing period",
            )
            return subscription

        subscription = await self._mutate(user_id, "cancel_subscription", cancel)
        if subscription.status == SubscriptionStatus.CANCELLED:
            metrics.record_subscription_transition("cancelled")
            logger.info(
                "subscription_cancelled",
                user_id=user_id,
                access_until=subscription.end_date.isoformat(),
            )
        return subscription

    async def reactivate_subscription(self, user_id: str) -> Subscription:
        """Undo a cancellation while the paid period is still running."""

        def reactivate(ledger: UsageLedger, now: datetime) -> tuple[Subscription, bool]:
            subscription = ledger.subscription
            if (
                subscription.tier != SubscriptionTier.PREMIUM
                or subscription.status != SubscriptionStatus.CANCELLED
                or subscription.end_date <= now
            ):
                logger.warning(
                    "subscription_reactivate_ignored",
                    user_id=user_id,
                    tier=subscription.tier.value,
                    status=subscription.status.value,
                )
                return subscription, False
            subscription.auto_renew = True
            subscription.status = SubscriptionStatus.ACTIVE
            self._append_transaction(
                ledger, now, PaymentType.SUBSCRIPTION, "Premium subscription reactivated"
            )
            return subscription, True

        subscription, applied = await self._mutate(
            user_id, "reactivate_subscription", reactivate
        )
        if applied:
            metrics.record_subscription_transition("reactivated")
            logger.info("subscription_reactivated", user_id=user_id)
        return subscription

    async def pause_subscription(self, user_id: str) -> Subscription:
        """Suspend an active PREMIUM subscription; quota falls back to FREE."""
        return await self._set_paused(user_id, paused=True)

    async def resume_subscription(self, user_id: str) -> Subscription:
        """Resume a paused PREMIUM subscription."""
        return await self._set_paused(user_id, paused=False)

    async def _set_paused(self, user_id: str, paused: bool) -> Subscription:
        source = SubscriptionStatus.ACTIVE if paused else SubscriptionStatus.PAUSED
        target = SubscriptionStatus.PAUSED if paused else SubscriptionStatus.ACTIVE
        operation = "paused" if paused else "resumed"

        def transition(ledger: UsageLedger, now: datetime) -> tuple[Subscription, bool]:
            subscription = ledger.subscription
            if subscription.tier != SubscriptionTier.PREMIUM or subscription.status != source:
                logger.warning(
                    f"subscription_{operation}_ignored",
                    user_id=user_id,
                    tier=subscription.tier.value,
                    status=subscription.status.value,
                )
                return subscription, False
            subscription.status = target
            ledger.usage.limit = self.plan_for(ledger).monthly_limit
            self._append_transaction(
                ledger, now, PaymentType.SUBSCRIPTION, f"Premium subscription {operation}"
            )
            return subscription, True

        subscription, applied = await self._mutate(
            user_id, f"subscription_{operation}", transition
        )
        if applied:
            metrics.record_subscription_transition(operation)
            logger.info(f"subscription_{operation}", user_id=user_id)
        return subscription

    async def revoke_subscription(self, user_id: str, reason: str) -> Subscription:
        """Immediate downgrade to FREE/EXPIRED (refund, chargeback, expiry event)."""

        def revoke(ledger: UsageLedger, now: datetime) -> Subscription:
            subscription = ledger.subscription
            subscription.tier = SubscriptionTier.FREE
            subscription.status = SubscriptionStatus.EXPIRED
            subscription.auto_renew = False
            subscription.end_date = now
            ledger.usage.limit = self.plan_for(ledger).monthly_limit
            self._append_transaction(
                ledger,
                now,
                PaymentType.SUBSCRIPTION,
                f"Premium access revoked - {reason}",
                external_payment_id=subscription.external_subscription_id,
            )
            return subscription

        subscription = await self._mutate(user_id, "revoke_subscription", revoke)
        metrics.record_subscription_transition("revoked")
        logger.warning("subscription_revoked", user_id=user_id, reason=reason)
        return subscription

    # ========================================================================
    # Credits
    # ========================================================================

    async def add_credit_grant(
        self,
        user_id: str,
        count: int,
        price: int,
        external_payment_id: str | None = None,
    ) -> str:
        """
        Add purchased credits expiring after credit_expiry_days.

        Not deduplicated by external_payment_id; callers own idempotency.

        Returns:
            The new grant id
        """
        if count <= 0:
            raise ValueError(f"Credit count must be positive: {count}")
        if price < 0:
            raise ValueError(f"Credit price cannot be negative: {price}")

        def add(ledger: UsageLedger, now: datetime) -> CreditGrant:
            grant = CreditGrant(
                id=f"grant_{uuid4().hex}",
                count=count,
                purchase_price=price,
                purchase_date=now,
                expiry_date=now + timedelta(days=self.credit_expiry_days),
                external_payment_id=external_payment_id,
            )
            ledger.credit_grants.append(grant)
            self._append_transaction(
                ledger,
                now,
                PaymentType.ONE_TIME,
                f"Purchased {count} try-on credit{'s' if count != 1 else ''}",
                amount=price,
                external_payment_id=external_payment_id,
            )
            return grant

        grant = await self._mutate(user_id, "add_credit_grant", add)
        metrics.record_credit_grant(count)
        logger.info(
            "credit_grant_added",
            user_id=user_id,
            grant_id=grant.id,
            count=count,
            price=price,
            expiry_date=grant.expiry_date.isoformat(),
            external_payment_id=external_payment_id,
        )
        return grant.id

    async def revoke_credit_grant(self, user_id: str, grant_id: str, reason: str) -> CreditGrant:
        """
        Remove a credit grant (refund or admin action).

        Raises:
            CreditGrantNotFoundError: No grant with that id
        """

        def revoke(ledger: UsageLedger, now: datetime) -> CreditGrant:
            grant = ledger.find_grant(grant_id)
            if grant is None:
                raise CreditGrantNotFoundError(user_id, grant_id)
            self._remove_grant(ledger, grant, now, reason)
            return grant

        grant = await self._mutate(user_id, "revoke_credit_grant", revoke)
        logger.warning(
            "credit_grant_revoked",
            user_id=user_id,
            grant_id=grant.id,
            credits_removed=grant.count,
            reason=reason,
        )
        return grant

    async def revoke_credits_for_payment(
        self, user_id: str, payment_id: str, reason: str
    ) -> CreditGrant | None:
        """Remove the grant bought with payment_id, if there is one."""

        def revoke(ledger: UsageLedger, now: datetime) -> CreditGrant | None:
            grant = ledger.find_grant_by_payment(payment_id)
            if grant is not None:
                self._remove_grant(ledger, grant, now, reason)
            return grant

        grant = await self._mutate(user_id, "revoke_credits_for_payment", revoke)
        if grant is not None:
            logger.warning(
                "credit_grant_revoked",
                user_id=user_id,
                grant_id=grant.id,
                credits_removed=grant.count,
                payment_id=payment_id,
                reason=reason,
            )
        return grant

    def _remove_grant(
        self, ledger: UsageLedger, grant: CreditGrant, now: datetime, reason: str
    ) -> None:
        ledger.credit_grants = [g for g in ledger.credit_grants if g.id != grant.id]
        self._append_transaction(
            ledger,
            now,
            PaymentType.ONE_TIME,
            f"One-time credits revoked - {reason}",
            external_payment_id=grant.external_payment_id,
        )

    # ========================================================================
    # Audit / admin
    # ========================================================================

    async def record_transaction(self, user_id: str, transaction: PaymentTransaction) -> None:
        """Append an externally built transaction to the audit trail."""

        def record(ledger: UsageLedger, now: datetime) -> None:
            ledger.transactions.append(transaction)

        await self._mutate(user_id, "record_transaction", record)

    async def reset_ledger(self, user_id: str) -> None:
        """Delete all billing state for the user (admin/test)."""
        await self.store.delete(user_id)
        logger.warning("ledger_reset", user_id=user_id)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _read(
        self, user_id: str, now: datetime
    ) -> tuple[UsageLedger, int, bool, datetime | None]:
        """
        Load (or create) and correct a ledger without persisting.

        Returns:
            (ledger, version read, whether the ledger differs from storage,
            end date of a subscription expired by this read)
        """
        stored = await self.store.load(user_id)
        if stored is None:
            logger.info("ledger_created", user_id=user_id, tier=SubscriptionTier.FREE.value)
            return self.new_ledger(user_id, now), 0, True, None

        ledger = stored.ledger
        changed = self._rollover_period(ledger, now)
        expired_at = self._expire_subscription(ledger, now)
        changed = expired_at is not None or changed
        changed = self._prune_expired_grants(ledger, now) or changed
        return ledger, stored.version, changed, expired_at

    async def _mutate(
        self,
        user_id: str,
        operation: str,
        mutator: Callable[[UsageLedger, datetime], T],
    ) -> T:
        """
        Read-modify-write with compare-and-set, retried on conflict.

        Exceptions raised by the mutator abort the write.
        """
        start_time = time.perf_counter()
        try:
            for attempt in range(1, self.max_cas_retries + 1):
                now = self.clock()
                ledger, version, _, expired_at = await self._read(user_id, now)
                result = mutator(ledger, now)
                try:
                    await self.store.save(ledger, version)
                    self._record_expiry(user_id, expired_at)
                    return result
                except ConcurrencyError:
                    metrics.record_ledger_conflict(operation)
                    logger.warning(
                        "ledger_write_conflict",
                        user_id=user_id,
                        operation=operation,
                        attempt=attempt,
                    )
                    if attempt == self.max_cas_retries:
                        raise
            raise ConcurrencyError(f"ledger:{user_id}")  # pragma: no cover
        finally:
            metrics.record_ledger_mutation(operation, time.perf_counter() - start_time)

    def _rollover_period(self, ledger: UsageLedger, now: datetime) -> bool:
        """Start a fresh period when the calendar month changed."""
        current = period_key(now)
        previous = ledger.usage.period_key
        if previous == current:
            return False

        ledger.usage = UsageRecord(
            period_key=current,
            used=0,
            limit=self.plan_for(ledger).monthly_limit,
            last_updated=now,
        )
        logger.info(
            "usage_period_rolled_over",
            user_id=ledger.user_id,
            previous_period=previous,
            period=current,
            limit=ledger.usage.limit,
        )
        return True

    def _expire_subscription(self, ledger: UsageLedger, now: datetime) -> datetime | None:
        """
        Downgrade a PREMIUM subscription whose end date has passed.

        Returns the end date when the downgrade happened. Nothing is counted
        here; the caller records the expiry once the write succeeds.
        """
        subscription = ledger.subscription
        if subscription.tier != SubscriptionTier.PREMIUM or subscription.end_date >= now:
            return None

        subscription.tier = SubscriptionTier.FREE
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.auto_renew = False
        ledger.usage.limit = self.plan_for(ledger).monthly_limit
        self._append_transaction(
            ledger,
            now,
            PaymentType.SUBSCRIPTION,
            "Premium subscription expired - downgraded to FREE tier",
        )
        return subscription.end_date

    def _record_expiry(self, user_id: str, expired_at: datetime | None) -> None:
        if expired_at is None:
            return
        metrics.record_subscription_transition("expired")
        logger.info("subscription_expired", user_id=user_id, ended_at=expired_at.isoformat())

    def _prune_expired_grants(self, ledger: UsageLedger, now: datetime) -> bool:
        """Drop expired grants; depleted but unexpired grants are kept."""
        expired = [grant for grant in ledger.credit_grants if grant.is_expired(now)]
        if not expired:
            return False

        ledger.credit_grants = [
            grant for grant in ledger.credit_grants if not grant.is_expired(now)
        ]
        logger.info(
            "credit_grants_expired",
            user_id=ledger.user_id,
            grants=len(expired),
            credits_lost=sum(grant.count for grant in expired),
        )
        return True

    def _append_transaction(
        self,
        ledger: UsageLedger,
        now: datetime,
        kind: PaymentType,
        description: str,
        amount: int = 0,
        external_payment_id: str | None = None,
    ) -> None:
        ledger.transactions.append(
            PaymentTransaction(
                id=f"txn_{uuid4().hex}",
                kind=kind,
                amount=amount,
                currency=self.currency,
                status=TransactionStatus.SUCCESS,
                created_at=now,
                description=description,
                external_payment_id=external_payment_id,
            )
        )
