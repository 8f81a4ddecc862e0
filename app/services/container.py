"""
Service wiring - builds every collaborator once per process.

Services are constructed explicitly and passed around; nothing in the
service layer reaches for a module-level singleton.
"""

from dataclasses import dataclass

from app.config import Settings
from app.db.session import get_session_factory
from app.observability import get_logger
from app.services.billing_events import BillingEventHandler
from app.services.clock import Clock, utc_now
from app.services.rate_limiter import RateLimiter, build_default_limiters
from app.services.stores import (
    InMemoryLedgerStore,
    InMemoryRateWindowStore,
    LedgerStore,
    RateWindowStore,
    SqlLedgerStore,
    SqlRateWindowStore,
)
from app.services.usage_gate import UsageGate
from app.services.usage_ledger import UsageLedgerService
from app.services.webhook_verifier import HmacWebhookVerifier, WebhookVerifier

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything the HTTP layer and admin tooling need."""

    settings: Settings
    clock: Clock
    ledger_store: LedgerStore
    rate_window_store: RateWindowStore
    ledger_service: UsageLedgerService
    limiters: dict[str, RateLimiter]
    event_handler: BillingEventHandler
    webhook_verifier: WebhookVerifier | None

    def usage_gate(self, atomic: bool = False) -> UsageGate:
        return UsageGate(self.ledger_service, self.limiters, atomic=atomic)


def build_container(
    settings: Settings,
    clock: Clock = utc_now,
    ledger_store: LedgerStore | None = None,
    rate_window_store: RateWindowStore | None = None,
) -> ServiceContainer:
    """
    Build services for the configured storage backend.

    Explicit stores override the backend choice (used by tests).
    """
    if settings.storage_backend == "database":
        session_factory = get_session_factory()
        ledger_store = ledger_store or SqlLedgerStore(session_factory)
        rate_window_store = rate_window_store or SqlRateWindowStore(session_factory)
    else:
        ledger_store = ledger_store or InMemoryLedgerStore()
        rate_window_store = rate_window_store or InMemoryRateWindowStore()

    ledger_service = UsageLedgerService.from_settings(ledger_store, settings, clock)

    webhook_verifier: WebhookVerifier | None = None
    if settings.webhook_secret:
        webhook_verifier = HmacWebhookVerifier(settings.webhook_secret)
    else:
        logger.warning("webhook_secret_not_configured")

    logger.info(
        "services_built",
        storage_backend=settings.storage_backend,
        webhooks_enabled=webhook_verifier is not None,
    )

    return ServiceContainer(
        settings=settings,
        clock=clock,
        ledger_store=ledger_store,
        rate_window_store=rate_window_store,
        ledger_service=ledger_service,
        limiters=build_default_limiters(rate_window_store, settings, clock),
        event_handler=BillingEventHandler(ledger_service),
        webhook_verifier=webhook_verifier,
    )
