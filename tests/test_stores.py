"""
Tests for ledger and rate-window stores.

In-memory stores are exercised directly; SQL stores run against a mocked
AsyncSession so the compare-and-set and error mapping paths are covered
without a database.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.db.models import LedgerRecord, RateWindowRecord
from app.exceptions import ConcurrencyError, StorageError
from app.services.stores import (
    InMemoryLedgerStore,
    InMemoryRateWindowStore,
    SqlLedgerStore,
    SqlRateWindowStore,
)

USER = "store_user"


@pytest.fixture
def ledger(ledger_service, clock):
    return ledger_service.new_ledger(USER, clock())


@pytest.fixture
def session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def session_factory(session):
    @asynccontextmanager
    async def factory():
        yield session

    return factory


class TestInMemoryLedgerStore:
    """Tests for InMemoryLedgerStore."""

    async def test_load_missing(self):
        assert await InMemoryLedgerStore().load(USER) is None

    async def test_create_then_update(self, ledger):
        store = InMemoryLedgerStore()

        assert await store.save(ledger, expected_version=0) == 1
        assert await store.save(ledger, expected_version=1) == 2

        stored = await store.load(USER)
        assert stored.version == 2
        assert stored.ledger == ledger

    async def test_create_conflict(self, ledger):
        store = InMemoryLedgerStore()
        await store.save(ledger, expected_version=0)

        with pytest.raises(ConcurrencyError):
            await store.save(ledger, expected_version=0)

    async def test_stale_version_conflict(self, ledger):
        store = InMemoryLedgerStore()
        await store.save(ledger, expected_version=0)
        await store.save(ledger, expected_version=1)

        with pytest.raises(ConcurrencyError):
            await store.save(ledger, expected_version=1)

    async def test_loaded_ledger_is_a_copy(self, ledger):
        """Mutating a loaded ledger does not change the stored record."""
        store = InMemoryLedgerStore()
        await store.save(ledger, expected_version=0)

        loaded = (await store.load(USER)).ledger
        loaded.usage.used = 2

        assert (await store.load(USER)).ledger.usage.used == 0

    async def test_delete(self, ledger):
        store = InMemoryLedgerStore()
        await store.save(ledger, expected_version=0)

        await store.delete(USER)
        await store.delete(USER)

        assert await store.load(USER) is None


class TestInMemoryRateWindowStore:
    """Tests for InMemoryRateWindowStore."""

    async def test_round_trip_and_delete(self):
        store = InMemoryRateWindowStore()
        assert await store.load("key") == []

        await store.save("key", [1_000, 2_000])
        assert await store.load("key") == [1_000, 2_000]

        await store.delete("key")
        assert await store.load("key") == []


class TestSqlLedgerStore:
    """Tests for SqlLedgerStore against a mocked session."""

    async def test_load_missing(self, session, session_factory):
        session.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value=None))

        assert await SqlLedgerStore(session_factory).load(USER) is None

    async def test_load_existing(self, session, session_factory, ledger):
        record = LedgerRecord(user_id=USER, version=4, data=ledger.model_dump(mode="json"))
        session.execute.return_value = MagicMock(
            scalar_one_or_none=MagicMock(return_value=record)
        )

        stored = await SqlLedgerStore(session_factory).load(USER)

        assert stored.version == 4
        assert stored.ledger == ledger

    async def test_create_inserts_version_one(self, session, session_factory, ledger):
        version = await SqlLedgerStore(session_factory).save(ledger, expected_version=0)

        assert version == 1
        added = session.add.call_args.args[0]
        assert isinstance(added, LedgerRecord)
        assert added.user_id == USER
        assert added.version == 1
        session.commit.assert_awaited_once()

    async def test_create_conflict(self, session, session_factory, ledger):
        session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

        with pytest.raises(ConcurrencyError):
            await SqlLedgerStore(session_factory).save(ledger, expected_version=0)

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    async def test_update_bumps_version(self, session, session_factory, ledger):
        session.execute.return_value = MagicMock(rowcount=1)

        version = await SqlLedgerStore(session_factory).save(ledger, expected_version=3)

        assert version == 4
        session.commit.assert_awaited_once()

    async def test_update_with_stale_version(self, session, session_factory, ledger):
        session.execute.return_value = MagicMock(rowcount=0)

        with pytest.raises(ConcurrencyError):
            await SqlLedgerStore(session_factory).save(ledger, expected_version=3)

        session.commit.assert_not_awaited()

    async def test_database_error_is_storage_error(self, session, session_factory, ledger):
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))
        store = SqlLedgerStore(session_factory)

        with pytest.raises(StorageError):
            await store.load(USER)
        with pytest.raises(StorageError):
            await store.save(ledger, expected_version=1)
        with pytest.raises(StorageError):
            await store.delete(USER)


class TestSqlRateWindowStore:
    """Tests for SqlRateWindowStore against a mocked session."""

    async def test_load(self, session, session_factory):
        session.get.return_value = RateWindowRecord(
            limiter_key="key", timestamps=[1_000, 2_000], request_count=2
        )

        assert await SqlRateWindowStore(session_factory).load("key") == [1_000, 2_000]

    async def test_load_missing(self, session, session_factory):
        session.get.return_value = None

        assert await SqlRateWindowStore(session_factory).load("key") == []

    async def test_save_merges_record(self, session, session_factory):
        await SqlRateWindowStore(session_factory).save("key", [1_000, 2_000, 3_000])

        merged = session.merge.call_args.args[0]
        assert merged.limiter_key == "key"
        assert merged.timestamps == [1_000, 2_000, 3_000]
        assert merged.request_count == 3
        session.commit.assert_awaited_once()

    async def test_database_error_is_storage_error(self, session, session_factory):
        session.get.side_effect = OperationalError("SELECT", {}, Exception("down"))

        with pytest.raises(StorageError):
            await SqlRateWindowStore(session_factory).load("key")
