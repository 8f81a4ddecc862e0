"""
Time helpers shared by the rate limiter and the usage ledger.

Services take a Clock so tests can drive time explicitly.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]

MS_PER_SECOND = 1000
SECONDS_PER_DAY = 24 * 60 * 60

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def to_epoch_ms(moment: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds (exact)."""
    return (moment - EPOCH) // timedelta(milliseconds=1)


def period_key(moment: datetime) -> str:
    """Billing period (calendar month, UTC) as YYYY-MM."""
    moment = moment.astimezone(UTC)
    return f"{moment.year:04d}-{moment.month:02d}"


def next_period_start(moment: datetime) -> datetime:
    """First instant of the next calendar month (UTC)."""
    moment = moment.astimezone(UTC)
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=UTC)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=UTC)
