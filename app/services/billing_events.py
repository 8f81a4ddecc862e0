"""
Billing Events - Apply payment/subscription events to usage ledgers.

Each event type maps to exactly one ledger operation. Events are not
deduplicated here; the payment collaborator owns delivery idempotency.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.models.api import BillingEvent, BillingEventType, PaymentType
from app.models.domain import EventOutcome
from app.observability import get_logger, trace_operation
from app.services.usage_ledger import UsageLedgerService

logger = get_logger(__name__)

T = TypeVar("T")

# (whether the ledger changed, detail)
Handled = tuple[bool, str]


class BillingEventHandler:
    """Dispatches BillingEvent objects to UsageLedgerService operations."""

    def __init__(self, ledger_service: UsageLedgerService) -> None:
        self.ledger_service = ledger_service
        self._handlers: dict[BillingEventType, Callable[[BillingEvent], Awaitable[Handled]]] = {
            BillingEventType.SUBSCRIPTION_ACTIVATED: self._subscription_activated,
            BillingEventType.SUBSCRIPTION_RENEWED: self._subscription_renewed,
            BillingEventType.SUBSCRIPTION_CANCELLED: self._subscription_cancelled,
            BillingEventType.SUBSCRIPTION_EXPIRED: self._subscription_expired,
            BillingEventType.SUBSCRIPTION_PAUSED: self._subscription_paused,
            BillingEventType.SUBSCRIPTION_RESUMED: self._subscription_resumed,
            BillingEventType.CREDITS_GRANTED: self._credits_granted,
            BillingEventType.REFUND_PROCESSED: self._refund_processed,
        }

    async def handle(self, event: BillingEvent) -> EventOutcome:
        """
        Apply one event.

        Raises:
            ValueError: A field the event type requires is missing
        """
        logger.info(
            "billing_event_received",
            event_id=event.event_id,
            event_type=event.event_type.value,
            user_id=event.user_id,
        )

        with trace_operation(
            "billing_event.handle",
            event_type=event.event_type.value,
            user_id=event.user_id,
        ):
            applied, detail = await self._handlers[event.event_type](event)

        logger.info(
            "billing_event_applied" if applied else "billing_event_ignored",
            event_id=event.event_id,
            event_type=event.event_type.value,
            user_id=event.user_id,
            detail=detail,
        )
        return EventOutcome(
            event_type=event.event_type,
            user_id=event.user_id,
            applied=applied,
            detail=detail,
        )

    async def _subscription_activated(self, event: BillingEvent) -> Handled:
        subscription = await self.ledger_service.grant_subscription(
            event.user_id,
            external_subscription_id=event.external_subscription_id,
            period_end=event.period_end,
            amount=event.price,
        )
        return True, f"subscription active until {subscription.end_date.isoformat()}"

    async def _subscription_renewed(self, event: BillingEvent) -> Handled:
        period_end = _require(event.period_end, "period_end", event)
        subscription = await self.ledger_service.renew_subscription(
            event.user_id, period_end, amount=event.price
        )
        return True, f"subscription renewed until {subscription.end_date.isoformat()}"

    async def _subscription_cancelled(self, event: BillingEvent) -> Handled:
        subscription = await self.ledger_service.cancel_subscription(event.user_id)
        return True, f"subscription {subscription.status.value.lower()}"

    async def _subscription_expired(self, event: BillingEvent) -> Handled:
        await self.ledger_service.revoke_subscription(event.user_id, reason="expired")
        return True, "subscription expired"

    async def _subscription_paused(self, event: BillingEvent) -> Handled:
        subscription = await self.ledger_service.pause_subscription(event.user_id)
        return True, f"subscription {subscription.status.value.lower()}"

    async def _subscription_resumed(self, event: BillingEvent) -> Handled:
        subscription = await self.ledger_service.resume_subscription(event.user_id)
        return True, f"subscription {subscription.status.value.lower()}"

    async def _credits_granted(self, event: BillingEvent) -> Handled:
        count = _require(event.count, "count", event)
        price = _require(event.price, "price", event)
        grant_id = await self.ledger_service.add_credit_grant(
            event.user_id, count, price, external_payment_id=event.payment_id
        )
        return True, f"granted {count} credits ({grant_id})"

    async def _refund_processed(self, event: BillingEvent) -> Handled:
        """
        Route a refund by what the refunded payment bought.

        A credit purchase loses its grant and a subscription payment revokes
        Premium. Payments the ledger has no record of change nothing.
        """
        payment_id = event.related_payment_id
        if payment_id is None:
            logger.warning("refund_without_payment_id", user_id=event.user_id)
            return False, "refund ignored: no related payment"

        grant = await self.ledger_service.revoke_credits_for_payment(
            event.user_id, payment_id, reason="refund"
        )
        if grant is not None:
            return True, f"revoked credit grant {grant.id}"

        ledger = await self.ledger_service.get_ledger(event.user_id)
        kind = ledger.payment_kind(payment_id)
        if kind == PaymentType.SUBSCRIPTION:
            await self.ledger_service.revoke_subscription(event.user_id, reason="refund")
            return True, "subscription revoked"
        if kind == PaymentType.ONE_TIME:
            # Grant already expired or was revoked earlier
            logger.info("refund_credits_already_gone", user_id=event.user_id, payment_id=payment_id)
            return False, "refund ignored: credit grant no longer held"

        logger.warning("refund_payment_unknown", user_id=event.user_id, payment_id=payment_id)
        return False, "refund ignored: unknown payment"


def _require(value: T | None, field_name: str, event: BillingEvent) -> T:
    if value is None:
        raise ValueError(f"{event.event_type.value} event requires '{field_name}'")
    return value
