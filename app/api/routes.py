"""
API Routes - FastAPI endpoints for usage gating.

NO DICTIONARIES - All requests/responses use Pydantic models.

Billing errors raised by the services are turned into HTTP responses by the
handler registered in app.main (429/402/409/503/...).
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import text

from app.api.dependencies import (
    get_container,
    get_event_handler,
    get_ledger_service,
    get_limiters,
    get_webhook_verifier,
    require_api_key,
)
from app.db.session import get_session
from app.models.api import (
    AddCreditGrantRequest,
    AdmissionResponse,
    BillingEvent,
    ConsumeRequest,
    ConsumeResponse,
    CreditGrantResponse,
    CreditPackageResponse,
    HealthResponse,
    PlanResponse,
    PlansResponse,
    RateLimitStatsResponse,
    RateLimitWindowStats,
    SubscriptionResponse,
    UsageStatsResponse,
    WebhookResponse,
)
from app.models.ledger import Subscription, UsageLedger
from app.observability import get_logger
from app.services.billing_events import BillingEventHandler
from app.services.container import ServiceContainer
from app.services.plans import CREDIT_PACKAGES
from app.services.rate_limiter import (
    RateLimiter,
    check_all_limits,
    collect_stats,
    consume_all,
    reset_all,
)
from app.services.usage_ledger import UsageLedgerService
from app.services.webhook_verifier import WebhookVerifier

logger = get_logger(__name__)

router = APIRouter()

WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        tier=subscription.tier,
        status=subscription.status,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        auto_renew=subscription.auto_renew,
    )


async def _window_stats(limiters: dict[str, RateLimiter]) -> RateLimitStatsResponse:
    stats = await collect_stats(limiters)
    return RateLimitStatsResponse(
        windows=[
            RateLimitWindowStats(
                window=identity,
                used=snapshot.used,
                remaining=snapshot.remaining,
                total=snapshot.total,
                reset_in_seconds=snapshot.reset_in_seconds,
            )
            for identity, snapshot in stats.items()
        ]
    )


# =============================================================================
# Health / catalog
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity when the database backend is in use.
    """
    backend = container.settings.storage_backend
    if backend == "database":
        try:
            async with get_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.error("health_check_failed", error=str(exc))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Database unavailable",
            ) from exc

    return HealthResponse(
        status="healthy",
        storage_backend=backend,
        version=container.settings.api_version,
    )


@router.get("/v1/plans", response_model=PlansResponse)
async def list_plans(
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> PlansResponse:
    """Subscription plans and one-time credit packages."""
    currency = ledger_service.currency
    return PlansResponse(
        plans=[
            PlanResponse(
                tier=plan.tier,
                name=plan.name,
                monthly_limit=plan.monthly_limit,
                price=plan.price,
                currency=currency,
                description=plan.description,
                features=list(plan.features),
            )
            for plan in ledger_service.plans.values()
        ],
        credit_packages=[
            CreditPackageResponse(
                count=package.count,
                price=package.price,
                currency=currency,
                popular=package.popular,
            )
            for package in CREDIT_PACKAGES
        ],
    )


# =============================================================================
# Usage
# =============================================================================


@router.get("/v1/usage/{user_id}", response_model=UsageStatsResponse)
async def get_usage(
    user_id: str,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> UsageStatsResponse:
    """Current period usage. Creates a FREE ledger on first call."""
    stats = await ledger_service.get_usage_stats(user_id)
    return UsageStatsResponse(
        used=stats.used,
        limit=stats.limit,
        remaining=stats.remaining,
        one_time_credits=stats.one_time_credits,
        percent_used=stats.percent_used,
        tier=stats.tier,
        status=stats.status,
        days_until_reset=stats.days_until_reset,
    )


@router.get(
    "/v1/usage/{user_id}/ledger",
    response_model=UsageLedger,
    dependencies=[Depends(require_api_key)],
)
async def get_ledger(
    user_id: str,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> UsageLedger:
    """Full ledger including grants and the transaction audit trail."""
    return await ledger_service.get_ledger(user_id)


@router.post("/v1/usage/{user_id}/check", response_model=AdmissionResponse)
async def check_usage(
    user_id: str,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> AdmissionResponse:
    """Whether the user may start one more billable operation."""
    decision = await ledger_service.check_admission(user_id)
    return AdmissionResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        bucket=decision.bucket,
    )


@router.post("/v1/usage/{user_id}/consume", response_model=ConsumeResponse)
async def consume_usage(
    user_id: str,
    request: ConsumeRequest,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
    limiters: dict[str, RateLimiter] = Depends(get_limiters),
) -> ConsumeResponse:
    """
    Record one successful operation.

    Call only after the image operation succeeded. Debits the ledger, then
    records the request on every upstream rate-limit window, also when the
    debit fails.
    """
    try:
        if request.atomic:
            result = await ledger_service.try_consume(
                user_id, request.action, request.related_item_id
            )
        else:
            result = await ledger_service.consume(
                user_id, request.action, request.related_item_id
            )
    finally:
        await consume_all(limiters)

    return ConsumeResponse(
        bucket=result.bucket,
        grant_id=result.grant_id,
        cost=result.entry.cost,
        used=result.used,
        limit=result.limit,
        credits_remaining=result.credits_remaining,
    )


@router.delete(
    "/v1/usage/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_api_key)],
)
async def reset_usage(
    user_id: str,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> Response:
    """Delete all billing state for the user."""
    await ledger_service.reset_ledger(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Credits
# =============================================================================


@router.post(
    "/v1/usage/{user_id}/credits",
    response_model=CreditGrantResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def add_credits(
    user_id: str,
    request: AddCreditGrantRequest,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> CreditGrantResponse:
    """Add a one-time credit grant (manual or after a verified purchase)."""
    grant_id = await ledger_service.add_credit_grant(
        user_id,
        request.count,
        request.price,
        external_payment_id=request.external_payment_id,
    )
    ledger = await ledger_service.get_ledger(user_id)
    grant = ledger.find_grant(grant_id)
    if grant is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Credit grant was removed concurrently",
        )
    return CreditGrantResponse(grant_id=grant.id, count=grant.count, expiry_date=grant.expiry_date)


@router.delete(
    "/v1/usage/{user_id}/credits/{grant_id}",
    response_model=CreditGrantResponse,
    dependencies=[Depends(require_api_key)],
)
async def revoke_credits(
    user_id: str,
    grant_id: str,
    reason: str = "admin",
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> CreditGrantResponse:
    """Remove a credit grant. Returns the grant as it was when removed."""
    grant = await ledger_service.revoke_credit_grant(user_id, grant_id, reason)
    return CreditGrantResponse(grant_id=grant.id, count=grant.count, expiry_date=grant.expiry_date)


# =============================================================================
# Subscription
# =============================================================================


@router.post(
    "/v1/usage/{user_id}/subscription/cancel",
    response_model=SubscriptionResponse,
)
async def cancel_subscription(
    user_id: str,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> SubscriptionResponse:
    """Stop auto-renew; access continues until the period ends."""
    return _subscription_response(await ledger_service.cancel_subscription(user_id))


@router.post(
    "/v1/usage/{user_id}/subscription/reactivate",
    response_model=SubscriptionResponse,
)
async def reactivate_subscription(
    user_id: str,
    ledger_service: UsageLedgerService = Depends(get_ledger_service),
) -> SubscriptionResponse:
    """Undo a cancellation before the period ends."""
    return _subscription_response(await ledger_service.reactivate_subscription(user_id))


# =============================================================================
# Upstream rate limits
# =============================================================================


@router.get("/v1/rate-limits", response_model=RateLimitStatsResponse)
async def get_rate_limits(
    limiters: dict[str, RateLimiter] = Depends(get_limiters),
) -> RateLimitStatsResponse:
    """Snapshot of every upstream window."""
    return await _window_stats(limiters)


@router.post("/v1/rate-limits/check", response_model=RateLimitStatsResponse)
async def check_rate_limits(
    limiters: dict[str, RateLimiter] = Depends(get_limiters),
) -> RateLimitStatsResponse:
    """
    Check every window without recording a request.

    429 with Retry-After when a window is full.
    """
    await check_all_limits(limiters, consume=False)
    return await _window_stats(limiters)


@router.delete(
    "/v1/rate-limits",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_api_key)],
)
async def reset_rate_limits(
    limiters: dict[str, RateLimiter] = Depends(get_limiters),
) -> Response:
    """Clear every window."""
    await reset_all(limiters)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Payment webhooks
# =============================================================================


@router.post("/v1/billing/webhooks/payments", response_model=WebhookResponse)
async def payments_webhook(
    request: Request,
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    event_handler: BillingEventHandler = Depends(get_event_handler),
) -> WebhookResponse:
    """
    Apply a signed payment/subscription event to the user's ledger.

    Signature (raw body) is checked before the payload is parsed.
    """
    payload = await request.body()
    verifier.verify(payload, request.headers.get(WEBHOOK_SIGNATURE_HEADER))

    try:
        event = BillingEvent.model_validate_json(payload)
        outcome = await event_handler.handle(event)
    except ValueError as exc:
        logger.warning("payments_webhook_rejected", error=str(exc))
        raise HTTPException(
            status_code=422,
            detail=str(exc),
        ) from exc

    return WebhookResponse(
        status="processed" if outcome.applied else "ignored",
        event_id=event.event_id,
        detail=outcome.detail,
    )
