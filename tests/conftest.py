"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A controllable clock
- In-memory ledger and rate-window stores
- Ledger service, rate limiters and usage gate wired to them
- API test client built from an explicit service container
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Set required environment variables BEFORE importing app modules
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["TRACING_ENABLED"] = "false"
os.environ.setdefault("LOG_FORMAT", "console")

from app.config import Settings
from app.main import create_app
from app.models.api import SubscriptionTier
from app.models.domain import RateLimitConfig
from app.services.container import ServiceContainer, build_container
from app.services.rate_limiter import RateLimiter, build_default_limiters
from app.services.stores import InMemoryLedgerStore, InMemoryRateWindowStore
from app.services.usage_gate import UsageGate
from app.services.usage_ledger import UsageLedgerService

TEST_API_KEY = "test-api-key"
TEST_WEBHOOK_SECRET = "whsec_test_secret"

# Mid-month so a whole period is available before rollover
START_TIME = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with small rate limits so tests can fill windows quickly."""
    return Settings(
        storage_backend="memory",
        api_key=TEST_API_KEY,
        webhook_secret=TEST_WEBHOOK_SECRET,
        free_monthly_limit=3,
        premium_monthly_limit=25,
        rate_limit_per_minute=5,
        rate_limit_per_hour=20,
        rate_limit_per_day=50,
        tracing_enabled=False,
    )


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def rate_window_store() -> InMemoryRateWindowStore:
    return InMemoryRateWindowStore()


@pytest.fixture
def ledger_service(
    ledger_store: InMemoryLedgerStore, test_settings: Settings, clock: FakeClock
) -> UsageLedgerService:
    return UsageLedgerService.from_settings(ledger_store, test_settings, clock)


@pytest.fixture
def limiters(
    rate_window_store: InMemoryRateWindowStore, test_settings: Settings, clock: FakeClock
) -> dict[str, RateLimiter]:
    return build_default_limiters(rate_window_store, test_settings, clock)


@pytest.fixture
def make_limiter(
    rate_window_store: InMemoryRateWindowStore, clock: FakeClock
) -> Callable[..., RateLimiter]:
    """Factory for single limiters with arbitrary windows."""

    def _make(name: str, max_requests: int, window_ms: int) -> RateLimiter:
        config = RateLimitConfig(
            name=name,
            max_requests=max_requests,
            window_ms=window_ms,
            storage_key=f"test_{name}",
        )
        return RateLimiter(config, rate_window_store, clock)

    return _make


@pytest.fixture
def usage_gate(
    ledger_service: UsageLedgerService, limiters: dict[str, RateLimiter]
) -> UsageGate:
    return UsageGate(ledger_service, limiters)


@pytest.fixture
async def premium_user(ledger_service: UsageLedgerService) -> str:
    """User with an active PREMIUM subscription."""
    user_id = "premium_user"
    await ledger_service.grant_subscription(
        user_id, tier=SubscriptionTier.PREMIUM, external_subscription_id="sub_123"
    )
    return user_id


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
def container(
    test_settings: Settings,
    clock: FakeClock,
    ledger_store: InMemoryLedgerStore,
    rate_window_store: InMemoryRateWindowStore,
) -> ServiceContainer:
    return build_container(
        test_settings,
        clock,
        ledger_store=ledger_store,
        rate_window_store=rate_window_store,
    )


@pytest.fixture
def app(container: ServiceContainer) -> FastAPI:
    return create_app(container)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Test client without lifespan (no migrations for the memory backend)."""
    return TestClient(app)


@pytest.fixture
def api_headers() -> dict[str, str]:
    return {"X-API-Key": TEST_API_KEY}
