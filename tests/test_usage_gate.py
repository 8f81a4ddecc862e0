"""
Tests for the usage gate workflow.

A billable operation is charged (ledger + rate windows) only after it
succeeds; refusals happen before the operation runs.
"""

import pytest

from app.exceptions import (
    ErrorKind,
    LedgerInvariantViolationError,
    RateLimitExceededError,
    UsageLimitExceededError,
)
from app.models.api import ActionKind
from app.services.rate_limiter import collect_stats, consume_all
from app.services.usage_gate import UsageGate

USER = "gate_user"


class Operation:
    """Awaitable stand-in for an image generation call."""

    def __init__(self, result: str = "image_url", error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


async def window_usage(limiters) -> dict[str, int]:
    return {identity: stats.used for identity, stats in (await collect_stats(limiters)).items()}


class TestRun:
    """Tests for UsageGate.run()."""

    async def test_success_bills_ledger_and_windows(self, usage_gate, ledger_service, limiters):
        operation = Operation()

        result = await usage_gate.run(USER, ActionKind.TRY_ON, operation, related_item_id="item_1")

        assert result == "image_url"
        assert operation.calls == 1
        ledger = await ledger_service.get_ledger(USER)
        assert ledger.usage.used == 1
        assert ledger.usage.history[0].related_item_id == "item_1"
        assert await window_usage(limiters) == {"per_minute": 1, "per_hour": 1, "per_day": 1}

    async def test_failed_operation_bills_nothing(self, usage_gate, ledger_service, limiters):
        operation = Operation(error=RuntimeError("upstream timeout"))

        with pytest.raises(RuntimeError, match="upstream timeout"):
            await usage_gate.run(USER, ActionKind.TRY_ON, operation)

        assert (await ledger_service.get_ledger(USER)).usage.used == 0
        assert await window_usage(limiters) == {"per_minute": 0, "per_hour": 0, "per_day": 0}

    async def test_usage_exhausted_skips_operation(self, usage_gate, ledger_service, limiters):
        for _ in range(3):
            await ledger_service.consume(USER, ActionKind.TRY_ON)
        operation = Operation()

        with pytest.raises(UsageLimitExceededError) as exc_info:
            await usage_gate.run(USER, ActionKind.TRY_ON, operation)

        assert exc_info.value.kind == ErrorKind.USAGE_LIMIT_EXCEEDED
        assert exc_info.value.used == 3
        assert operation.calls == 0
        assert await window_usage(limiters) == {"per_minute": 0, "per_hour": 0, "per_day": 0}

    async def test_rate_limited_skips_operation(
        self, usage_gate, ledger_service, limiters, test_settings
    ):
        for _ in range(test_settings.rate_limit_per_minute):
            await consume_all(limiters)
        operation = Operation()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await usage_gate.run(USER, ActionKind.TRY_ON, operation)

        assert exc_info.value.window == "per_minute"
        assert exc_info.value.retry_after_seconds == 60
        assert operation.calls == 0
        assert (await ledger_service.get_ledger(USER)).usage.used == 0

    async def test_uses_credits_after_quota(self, usage_gate, ledger_service):
        await ledger_service.add_credit_grant(USER, count=1, price=29)
        for _ in range(3):
            await usage_gate.run(USER, ActionKind.TRY_ON, Operation())

        await usage_gate.run(USER, ActionKind.POSE_CHANGE, Operation())

        ledger = await ledger_service.get_ledger(USER)
        assert ledger.credit_grants[0].count == 0
        assert ledger.usage.history[-1].cost == 29

    async def test_capacity_lost_during_operation_is_invariant_violation(
        self, usage_gate, ledger_service
    ):
        """Another debit landing while the operation runs surfaces as an invariant error."""
        for _ in range(2):
            await ledger_service.consume(USER, ActionKind.TRY_ON)

        async def operation() -> str:
            await ledger_service.consume(USER, ActionKind.TRY_ON)
            return "image_url"

        with pytest.raises(LedgerInvariantViolationError):
            await usage_gate.run(USER, ActionKind.TRY_ON, operation)

    @pytest.mark.parametrize("atomic", [False, True])
    async def test_failed_debit_still_counts_upstream_call(
        self, ledger_service, limiters, atomic
    ):
        gate = UsageGate(ledger_service, limiters, atomic=atomic)
        for _ in range(2):
            await ledger_service.consume(USER, ActionKind.TRY_ON)
        upstream = Operation()

        async def operation() -> str:
            await ledger_service.consume(USER, ActionKind.TRY_ON)
            return await upstream()

        with pytest.raises(UsageLimitExceededError):
            await gate.run(USER, ActionKind.TRY_ON, operation)

        assert upstream.calls == 1
        assert await window_usage(limiters) == {"per_minute": 1, "per_hour": 1, "per_day": 1}

    async def test_atomic_mode_reports_usage_limit(self, ledger_service, limiters):
        gate = UsageGate(ledger_service, limiters, atomic=True)
        for _ in range(2):
            await ledger_service.consume(USER, ActionKind.TRY_ON)

        async def operation() -> str:
            await ledger_service.consume(USER, ActionKind.TRY_ON)
            return "image_url"

        with pytest.raises(UsageLimitExceededError) as exc_info:
            await gate.run(USER, ActionKind.TRY_ON, operation)

        assert exc_info.value.kind == ErrorKind.USAGE_LIMIT_EXCEEDED


class TestAttempt:
    """Tests for UsageGate.attempt() tagged results."""

    async def test_ok(self, usage_gate):
        result = await usage_gate.attempt(USER, ActionKind.TRY_ON, Operation("url_1"))

        assert result.ok
        assert result.value == "url_1"
        assert result.error_kind is None

    async def test_usage_limit(self, usage_gate, ledger_service):
        for _ in range(3):
            await ledger_service.consume(USER, ActionKind.TRY_ON)

        result = await usage_gate.attempt(USER, ActionKind.TRY_ON, Operation())

        assert not result.ok
        assert result.value is None
        assert result.error_kind == ErrorKind.USAGE_LIMIT_EXCEEDED
        assert "Upgrade to Premium" in result.message

    async def test_rate_limit(self, usage_gate, limiters, test_settings):
        for _ in range(test_settings.rate_limit_per_minute):
            await consume_all(limiters)

        result = await usage_gate.attempt(USER, ActionKind.TRY_ON, Operation())

        assert not result.ok
        assert result.error_kind == ErrorKind.RATE_LIMIT_EXCEEDED
        assert result.window == "per_minute"
        assert result.retry_after_seconds == 60
        assert "Please wait 1 minute" in result.message

    async def test_operation_error_propagates(self, usage_gate):
        with pytest.raises(ValueError):
            await usage_gate.attempt(USER, ActionKind.TRY_ON, Operation(error=ValueError("bad")))

    async def test_invariant_violation_propagates(self, usage_gate, ledger_service):
        for _ in range(2):
            await ledger_service.consume(USER, ActionKind.TRY_ON)

        async def operation() -> str:
            await ledger_service.consume(USER, ActionKind.TRY_ON)
            return "image_url"

        with pytest.raises(LedgerInvariantViolationError):
            await usage_gate.attempt(USER, ActionKind.TRY_ON, operation)
