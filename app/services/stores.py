"""
Persistence collaborators for ledgers and rate-limit windows.

Both stores are key-value: one JSON document per user id (ledger) or per
limiter storage key (timestamps). Ledger writes are compare-and-set on a
version number so concurrent writers for one user are detected.
"""

import json
from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import LedgerRecord, RateWindowRecord
from app.exceptions import ConcurrencyError, StorageError
from app.models.domain import VersionedLedger
from app.models.ledger import UsageLedger


class LedgerStore(Protocol):
    """Durable per-user ledger storage."""

    async def load(self, user_id: str) -> VersionedLedger | None:
        """Return the stored ledger and its version, or None."""
        ...

    async def save(self, ledger: UsageLedger, expected_version: int) -> int:
        """
        Write the ledger if the stored version still equals expected_version.

        expected_version 0 means "create"; it fails if a record exists.

        Returns:
            The new version

        Raises:
            ConcurrencyError: The stored version changed since it was read
            StorageError: The write failed
        """
        ...

    async def delete(self, user_id: str) -> None:
        """Remove the ledger (no-op when absent)."""
        ...


class RateWindowStore(Protocol):
    """Durable per-limiter timestamp storage."""

    async def load(self, key: str) -> list[int]:
        """Return stored timestamps (epoch ms), empty when absent."""
        ...

    async def save(self, key: str, timestamps: list[int]) -> None:
        """Replace the stored timestamps."""
        ...

    async def delete(self, key: str) -> None:
        """Remove the record (no-op when absent)."""
        ...


# ============================================================================
# In-memory stores
# ============================================================================


class InMemoryLedgerStore:
    """Process-local ledger store. Records are kept as JSON to avoid aliasing."""

    def __init__(self) -> None:
        self._records: dict[str, tuple[int, str]] = {}

    async def load(self, user_id: str) -> VersionedLedger | None:
        record = self._records.get(user_id)
        if record is None:
            return None
        version, payload = record
        return VersionedLedger(ledger=UsageLedger.model_validate_json(payload), version=version)

    async def save(self, ledger: UsageLedger, expected_version: int) -> int:
        current = self._records.get(ledger.user_id)
        current_version = current[0] if current else 0
        if current_version != expected_version:
            raise ConcurrencyError(f"ledger:{ledger.user_id}")
        new_version = current_version + 1
        self._records[ledger.user_id] = (new_version, ledger.model_dump_json())
        return new_version

    async def delete(self, user_id: str) -> None:
        self._records.pop(user_id, None)


class InMemoryRateWindowStore:
    """Process-local rate window store."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def load(self, key: str) -> list[int]:
        payload = self._records.get(key)
        if payload is None:
            return []
        return [int(ts) for ts in json.loads(payload)]

    async def save(self, key: str, timestamps: list[int]) -> None:
        self._records[key] = json.dumps(timestamps)

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)


# ============================================================================
# SQL stores
# ============================================================================


class SqlLedgerStore:
    """Ledger store backed by the usage_ledgers table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def load(self, user_id: str) -> VersionedLedger | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(LedgerRecord).where(LedgerRecord.user_id == user_id)
                )
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load ledger {user_id}: {e}") from e

        if record is None:
            return None
        return VersionedLedger(
            ledger=UsageLedger.model_validate(record.data),
            version=record.version,
        )

    async def save(self, ledger: UsageLedger, expected_version: int) -> int:
        data = ledger.model_dump(mode="json")
        new_version = expected_version + 1
        try:
            async with self.session_factory() as session:
                if expected_version == 0:
                    session.add(LedgerRecord(user_id=ledger.user_id, version=1, data=data))
                    try:
                        await session.flush()
                    except IntegrityError as e:
                        # Created by another writer since our read
                        await session.rollback()
                        raise ConcurrencyError(f"ledger:{ledger.user_id}") from e
                else:
                    result = await session.execute(
                        update(LedgerRecord)
                        .where(
                            LedgerRecord.user_id == ledger.user_id,
                            LedgerRecord.version == expected_version,
                        )
                        .values(version=new_version, data=data)
                    )
                    if result.rowcount != 1:
                        await session.rollback()
                        raise ConcurrencyError(f"ledger:{ledger.user_id}")
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save ledger {ledger.user_id}: {e}") from e
        return new_version

    async def delete(self, user_id: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(delete(LedgerRecord).where(LedgerRecord.user_id == user_id))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete ledger {user_id}: {e}") from e


class SqlRateWindowStore:
    """Rate window store backed by the rate_windows table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def load(self, key: str) -> list[int]:
        try:
            async with self.session_factory() as session:
                record = await session.get(RateWindowRecord, key)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load rate window {key}: {e}") from e
        if record is None:
            return []
        return [int(ts) for ts in record.timestamps]

    async def save(self, key: str, timestamps: list[int]) -> None:
        try:
            async with self.session_factory() as session:
                await session.merge(
                    RateWindowRecord(
                        limiter_key=key,
                        timestamps=list(timestamps),
                        request_count=len(timestamps),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save rate window {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(RateWindowRecord).where(RateWindowRecord.limiter_key == key)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete rate window {key}: {e}") from e
