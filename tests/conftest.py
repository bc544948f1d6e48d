"""Shared test fixtures for pytest."""

import sqlite3
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from lendledger.coordinator import LendingCoordinator
from lendledger.db.engine import create_engine, create_sessionmaker, init_db, transaction
from lendledger.metrics import MetricsRegistry
from lendledger.stores import LedgerStore, ResourceStore


class FixedClock:
    """Clock that returns a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def locked_error() -> OperationalError:
    """The error SQLAlchemy raises when SQLite reports a held write lock."""
    orig = sqlite3.OperationalError("database is locked")
    orig.sqlite_errorcode = 5
    orig.sqlite_errorname = "SQLITE_BUSY"
    return OperationalError("BEGIN IMMEDIATE", None, orig)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh file-backed SQLite database per test.

    File backed so concurrent transactions get their own connections.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", busy_timeout=5.0)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_sessionmaker(engine)


@pytest.fixture
def registry():
    return MetricsRegistry()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 10, 19, 12, 0, tzinfo=UTC))


@pytest.fixture
def coordinator(session_factory, registry, clock):
    return LendingCoordinator(session_factory=session_factory, registry=registry, clock=clock)


@pytest.fixture
def make_resource(session_factory):
    """Create a resource and return its id."""

    async def make(total_units: int = 3, name: str | None = None) -> int:
        async with transaction(session_factory) as session:
            resource = await ResourceStore(session).create(total_units, name=name)
            return resource.id

    return make


@pytest.fixture
def read_resource(session_factory):
    """Read a resource's committed state."""

    async def read(resource_id: int):
        async with transaction(session_factory) as session:
            return await ResourceStore(session).get(resource_id)

    return read


@pytest.fixture
def read_entry(session_factory):
    """Read a ledger entry's committed state."""

    async def read(entry_id: int):
        async with transaction(session_factory) as session:
            return await LedgerStore(session).get(entry_id)

    return read


@pytest.fixture
def count_active(session_factory):
    async def count(resource_id: int) -> int:
        async with transaction(session_factory) as session:
            return await LedgerStore(session).count_active(resource_id)

    return count
