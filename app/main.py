"""
Main Application - FastAPI application setup.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.routing import Match

from app.api.routes import router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines
from app.exceptions import (
    BillingError,
    ErrorKind,
    RateLimitExceededError,
    UsageLimitExceededError,
    error_kind,
)
from app.models.api import ErrorResponse
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.metrics import track_http_request
from app.observability.tracing import instrument_fastapi
from app.services.container import ServiceContainer, build_container

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.RATE_LIMIT_EXCEEDED: 429,
    ErrorKind.USAGE_LIMIT_EXCEEDED: 402,
    ErrorKind.LEDGER_INVARIANT_VIOLATION: 500,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.STORAGE: 503,
    ErrorKind.WEBHOOK: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.OTHER: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    container: ServiceContainer = app.state.container
    uses_database = container.settings.storage_backend == "database"

    # Startup
    logger.info(
        "application_starting",
        service=container.settings.api_title,
        version=container.settings.api_version,
        storage_backend=container.settings.storage_backend,
        tracing_enabled=container.settings.tracing_enabled,
        metrics_enabled=container.settings.metrics_enabled,
    )
    if uses_database:
        await asyncio.to_thread(run_migrations)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    if uses_database:
        await close_engines()
        logger.info("database_engines_closed")


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map billing errors to HTTP responses by ErrorKind."""
    kind = error_kind(exc)
    status_code = HTTP_STATUS_BY_KIND[kind]
    body = ErrorResponse(detail=str(exc), error=kind.value)
    headers: dict[str, str] | None = None

    if kind == ErrorKind.RATE_LIMIT_EXCEEDED and isinstance(exc, RateLimitExceededError):
        body.retry_after_seconds = exc.retry_after_seconds
        body.window = exc.window
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    elif isinstance(exc, UsageLimitExceededError):
        body.used = exc.used
        body.limit = exc.limit
        body.tier = exc.tier

    metrics.record_error(type(exc).__name__, "http_request")
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "billing_error",
        path=request.url.path,
        method=request.method,
        error_kind=kind.value,
        status_code=status_code,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


def _route_template(request: Request) -> str:
    """Route path template ("/v1/usage/{user_id}") to keep metric labels bounded."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return "unmatched"


async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing. request_id is bound to every log line."""
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = _route_template(request)
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=request.url.path)

        with track_http_request(endpoint, method) as tracker:
            try:
                response = await call_next(request)
            except Exception as e:
                metrics.record_error(type(e).__name__, "http_request")
                logger.error(
                    "request_failed",
                    method=method,
                    path=request.url.path,
                    error=str(e),
                    exc_info=True,
                )
                raise
            tracker.set_status_code(response.status_code)

        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
        )
    return response


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        container: Pre-built services (tests); built from settings otherwise
    """
    container = container or build_container(settings)

    app = FastAPI(
        title=container.settings.api_title,
        version=container.settings.api_version,
        description=container.settings.api_description,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Setup tracing
    setup_tracing()
    instrument_fastapi(app)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(logging_middleware)

    app.include_router(router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": container.settings.api_title,
            "version": container.settings.api_version,
            "status": "running",
        }

    if container.settings.metrics_enabled:

        @app.get("/metrics")
        async def metrics_endpoint() -> Response:
            """
            Prometheus metrics endpoint.

            Returns metrics in Prometheus text format.
            """
            return PlainTextResponse(generate_latest())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
