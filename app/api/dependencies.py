"""
FastAPI Dependencies - Service lookup and API key authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from app.observability import get_logger
from app.services.billing_events import BillingEventHandler
from app.services.container import ServiceContainer
from app.services.rate_limiter import RateLimiter
from app.services.usage_ledger import UsageLedgerService
from app.services.webhook_verifier import WebhookVerifier

logger = get_logger(__name__)


def get_container(request: Request) -> ServiceContainer:
    """Services wired by create_app()."""
    container: ServiceContainer = request.app.state.container
    return container


def get_ledger_service(
    container: ServiceContainer = Depends(get_container),
) -> UsageLedgerService:
    return container.ledger_service


def get_limiters(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, RateLimiter]:
    return container.limiters


def get_event_handler(
    container: ServiceContainer = Depends(get_container),
) -> BillingEventHandler:
    return container.event_handler


def get_webhook_verifier(
    container: ServiceContainer = Depends(get_container),
) -> WebhookVerifier:
    """
    Webhook verifier, or 503 when no webhook secret is configured.

    Unsigned events are never applied.
    """
    if container.webhook_verifier is None:
        logger.warning("webhook_rejected_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment webhooks are not configured",
        )
    return container.webhook_verifier


# ============================================================================
# API Key Authentication (for operator/service-to-service endpoints)
# ============================================================================


async def require_api_key(
    x_api_key: str | None = Header(None, description="Operator API key"),
    container: ServiceContainer = Depends(get_container),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Usage:
        @router.delete("/v1/usage/{user_id}", dependencies=[Depends(require_api_key)])

    Authentication is disabled when API_KEY is unset.

    Raises:
        HTTPException 401 if missing or invalid
    """
    expected = container.settings.api_key
    if not expected:
        return

    if x_api_key is None or not secrets.compare_digest(x_api_key, expected):
        logger.warning("api_key_rejected", has_api_key=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
