"""
Usage Gate - Wraps one billable image operation.

Order of events for every call:
1. Usage admission (quota or credits)
2. Upstream rate-limit check across all windows (nothing recorded yet)
3. The operation itself
4. Only after it succeeds: debit the ledger, then record the request on
   every rate-limit window (recorded even when the debit raises)

A failing operation is never billed and never counted against the windows.
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Generic, TypeVar

from app.exceptions import (
    ErrorKind,
    RateLimitExceededError,
    UsageLimitExceededError,
)
from app.models.api import ActionKind
from app.observability import get_logger, trace_operation
from app.services.rate_limiter import RateLimiter, check_all_limits, consume_all
from app.services.usage_ledger import UsageLedgerService

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class GateResult(Generic[T]):
    """Outcome of UsageGate.attempt(); expected refusals are values, not raises."""

    ok: bool
    value: T | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    retry_after_seconds: int | None = None
    window: str | None = None


class UsageGate:
    """Admission, rate limiting and post-hoc consumption around an operation."""

    def __init__(
        self,
        ledger_service: UsageLedgerService,
        limiters: Mapping[str, RateLimiter],
        atomic: bool = False,
    ) -> None:
        self.ledger_service = ledger_service
        self.limiters = limiters
        # try_consume re-checks admission under the same write as the debit
        self.atomic = atomic

    async def run(
        self,
        user_id: str,
        action: ActionKind,
        operation: Callable[[], Awaitable[T]],
        related_item_id: str | None = None,
    ) -> T:
        """
        Run operation if the user and the upstream API both have room.

        Raises:
            UsageLimitExceededError: Quota and credits exhausted
            RateLimitExceededError: An upstream window is full
        """
        with trace_operation("usage_gate.run", user_id=user_id, action=action.value):
            decision = await self.ledger_service.check_admission(user_id)
            if not decision.allowed:
                ledger = await self.ledger_service.get_ledger(user_id)
                raise UsageLimitExceededError(
                    used=ledger.usage.used,
                    limit=ledger.usage.limit,
                    tier=ledger.subscription.tier,
                    reason=decision.reason,
                )

            await check_all_limits(self.limiters, consume=False)

            value = await operation()

            # The upstream call happened, so it counts even if the debit fails
            try:
                if self.atomic:
                    await self.ledger_service.try_consume(user_id, action, related_item_id)
                else:
                    await self.ledger_service.consume(user_id, action, related_item_id)
            finally:
                await consume_all(self.limiters)

        logger.info("usage_gate_operation_billed", user_id=user_id, action=action.value)
        return value

    async def attempt(
        self,
        user_id: str,
        action: ActionKind,
        operation: Callable[[], Awaitable[T]],
        related_item_id: str | None = None,
    ) -> GateResult[T]:
        """
        Same flow as run(), with usage and rate-limit refusals as results.

        Any other failure (including the operation's own) propagates.
        """
        try:
            value = await self.run(user_id, action, operation, related_item_id)
        except RateLimitExceededError as exc:
            return GateResult(
                ok=False,
                error_kind=exc.kind,
                message=exc.message,
                retry_after_seconds=exc.retry_after_seconds,
                window=exc.window,
            )
        except UsageLimitExceededError as exc:
            if exc.kind != ErrorKind.USAGE_LIMIT_EXCEEDED:
                raise
            return GateResult(ok=False, error_kind=exc.kind, message=str(exc))
        return GateResult(ok=True, value=value)
