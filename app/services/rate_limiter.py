"""
Rate Limiter - Multi-window request limiting for the upstream image API.

Each RateLimiter counts request timestamps inside one trailing window.
Several limiters (per minute, per hour, per day) are composed by
check_all_limits(), which admits a request only when every window has room
and then records it on all of them.
"""

import math
from collections.abc import Mapping

from app.config import Settings
from app.exceptions import RateLimitExceededError
from app.models.domain import RateLimitConfig, RateLimitDecision, RateLimitStats
from app.observability import get_logger, metrics, trace_operation
from app.services.clock import MS_PER_SECOND, Clock, to_epoch_ms, utc_now
from app.services.stores import RateWindowStore

logger = get_logger(__name__)

MINUTE_MS = 60 * MS_PER_SECOND
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def prune_timestamps(timestamps: list[int], now_ms: int, window_ms: int) -> list[int]:
    """Keep timestamps strictly newer than now - window (boundary is expired)."""
    cutoff = now_ms - window_ms
    return [ts for ts in timestamps if ts > cutoff]


def compute_retry_after(timestamps: list[int], now_ms: int, window_ms: int) -> int:
    """Whole seconds until the oldest timestamp leaves the window (rounded up)."""
    if not timestamps:
        return 0
    oldest = min(timestamps)
    return max(0, math.ceil((oldest + window_ms - now_ms) / MS_PER_SECOND))


def format_retry_time(seconds: int) -> str:
    """Human-readable wait: seconds below a minute, then minutes, then hours."""
    if seconds < 60:
        return f"{seconds} second{'s' if seconds != 1 else ''}"
    if seconds < 3600:
        minutes = math.ceil(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours = math.ceil(seconds / 3600)
    return f"{hours} hour{'s' if hours != 1 else ''}"


def format_window(window_ms: int) -> str:
    """Describe a window length, e.g. "minute", "24 hours"."""
    for unit_ms, unit in ((DAY_MS, "day"), (HOUR_MS, "hour"), (MINUTE_MS, "minute")):
        if window_ms % unit_ms == 0:
            count = window_ms // unit_ms
            return unit if count == 1 else f"{count} {unit}s"
    seconds = math.ceil(window_ms / MS_PER_SECOND)
    return "second" if seconds == 1 else f"{seconds} seconds"


class RateLimiter:
    """
    Fixed-size trailing window over stored request timestamps.

    check_limit() never records anything; consume() always records. Callers
    must check first and consume only when admitted.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: RateWindowStore,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock

    @property
    def name(self) -> str:
        return self.config.name

    async def _active_timestamps(self, now_ms: int) -> list[int]:
        """Load, prune and (only if something aged out) persist the pruned list."""
        stored = await self.store.load(self.config.storage_key)
        active = prune_timestamps(stored, now_ms, self.config.window_ms)
        if len(active) != len(stored):
            await self.store.save(self.config.storage_key, active)
        return active

    async def check_limit(self) -> RateLimitDecision:
        """Check whether one more request fits in the window."""
        now_ms = to_epoch_ms(self.clock())
        active = await self._active_timestamps(now_ms)
        remaining = self.config.max_requests - len(active)

        if remaining <= 0:
            retry_after = compute_retry_after(active, now_ms, self.config.window_ms)
            metrics.record_rate_limit_check(self.name, allowed=False)
            return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=retry_after)

        metrics.record_rate_limit_check(self.name, allowed=True)
        return RateLimitDecision(allowed=True, remaining=remaining, retry_after_seconds=0)

    async def consume(self) -> None:
        """Record one request at the current time."""
        now_ms = to_epoch_ms(self.clock())
        stored = await self.store.load(self.config.storage_key)
        active = prune_timestamps(stored, now_ms, self.config.window_ms)
        active.append(now_ms)
        await self.store.save(self.config.storage_key, active)

    async def get_remaining(self) -> int:
        now_ms = to_epoch_ms(self.clock())
        active = await self._active_timestamps(now_ms)
        return max(0, self.config.max_requests - len(active))

    async def get_stats(self) -> RateLimitStats:
        """Read-only snapshot of the window."""
        now_ms = to_epoch_ms(self.clock())
        active = await self._active_timestamps(now_ms)
        return RateLimitStats(
            used=len(active),
            remaining=max(0, self.config.max_requests - len(active)),
            total=self.config.max_requests,
            reset_in_seconds=compute_retry_after(active, now_ms, self.config.window_ms),
        )

    async def reset(self) -> None:
        """Clear every stored timestamp for this window."""
        await self.store.delete(self.config.storage_key)
        logger.info("rate_limit_reset", window=self.name)


async def check_all_limits(
    limiters: Mapping[str, RateLimiter],
    *,
    consume: bool = True,
) -> None:
    """
    Admit one request against every window, tightest first.

    The first denying window raises RateLimitExceededError and nothing is
    consumed anywhere. When all windows admit and consume is true, one
    request is recorded on each of them.

    Raises:
        RateLimitExceededError: A window is full
    """
    with trace_operation("rate_limit.check_all", windows=",".join(limiters)):
        for identity, limiter in limiters.items():
            decision = await limiter.check_limit()
            if not decision.allowed:
                wait = format_retry_time(decision.retry_after_seconds)
                logger.warning(
                    "rate_limit_denied",
                    window=identity,
                    retry_after_seconds=decision.retry_after_seconds,
                    max_requests=limiter.config.max_requests,
                )
                raise RateLimitExceededError(
                    f"Rate limit reached: {limiter.config.max_requests} requests per "
                    f"{format_window(limiter.config.window_ms)}. "
                    f"Please wait {wait} before trying again.",
                    retry_after_seconds=decision.retry_after_seconds,
                    window=identity,
                )

        if consume:
            await consume_all(limiters)


async def consume_all(limiters: Mapping[str, RateLimiter]) -> None:
    """Record one request on every window."""
    for limiter in limiters.values():
        await limiter.consume()


async def collect_stats(limiters: Mapping[str, RateLimiter]) -> dict[str, RateLimitStats]:
    """Snapshot every window, keyed by identity."""
    return {identity: await limiter.get_stats() for identity, limiter in limiters.items()}


async def reset_all(limiters: Mapping[str, RateLimiter]) -> None:
    for limiter in limiters.values():
        await limiter.reset()


def build_default_limiters(
    store: RateWindowStore,
    settings: Settings,
    clock: Clock = utc_now,
) -> dict[str, RateLimiter]:
    """Per-minute, per-hour and per-day limiters, tightest window first."""
    prefix = settings.rate_limit_key_prefix
    configs = (
        RateLimitConfig(
            name="per_minute",
            max_requests=settings.rate_limit_per_minute,
            window_ms=MINUTE_MS,
            storage_key=f"{prefix}_minute",
        ),
        RateLimitConfig(
            name="per_hour",
            max_requests=settings.rate_limit_per_hour,
            window_ms=HOUR_MS,
            storage_key=f"{prefix}_hour",
        ),
        RateLimitConfig(
            name="per_day",
            max_requests=settings.rate_limit_per_day,
            window_ms=DAY_MS,
            storage_key=f"{prefix}_day",
        ),
    )
    return {config.name: RateLimiter(config, store, clock) for config in configs}
