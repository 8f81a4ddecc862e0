"""
Database Models - SQLAlchemy ORM models with strict typing.

Ledgers and rate windows are stored as whole-record JSON documents with a
version column for compare-and-set updates.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class LedgerRecord(Base):
    """
    ORM model for usage_ledgers table.

    One row per user holding the serialized UsageLedger.
    """

    __tablename__ = "usage_ledgers"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Incremented on every write; updates are conditional on the previous value
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)

    data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("version > 0", name="ck_ledger_version_positive"),
        Index("idx_usage_ledgers_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<LedgerRecord(user_id={self.user_id}, version={self.version})>"


class RateWindowRecord(Base):
    """
    ORM model for rate_windows table.

    One row per limiter storage key holding request timestamps (epoch ms).
    """

    __tablename__ = "rate_windows"

    limiter_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    timestamps: Mapped[list[int]] = mapped_column(JSONDocument, nullable=False, default=list)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("request_count >= 0", name="ck_rate_window_count_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<RateWindowRecord(limiter_key={self.limiter_key}, count={self.request_count})>"
