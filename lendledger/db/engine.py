"""Database engine configuration.

Uses SQLModel with async SQLite by default. The database URL can be
configured via the LENDLEDGER_DATABASE_URL environment variable.

On SQLite every transaction starts with ``BEGIN IMMEDIATE``: the write
lock is taken before the first read, so concurrent writers serialize
their check-then-update sections.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from lendledger.config import get_settings
from lendledger.errors import storage_error_from
from lendledger.logging import get_logger

logger = get_logger(__name__)

# Engine instance (lazy initialization)
_engine = None
_sessionmaker = None


# Connection execution options read by the SQLite begin hook
BUSY_TIMEOUT_OPTION = "ledger_busy_timeout"
READ_ONLY_OPTION = "ledger_read_only"


def _install_sqlite_hooks(engine: AsyncEngine, busy_timeout: float) -> None:
    """Take over transaction control from the sqlite3 driver."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        options = conn.get_execution_options()
        wait = busy_timeout
        if options.get(BUSY_TIMEOUT_OPTION) is not None:
            wait = min(wait, options[BUSY_TIMEOUT_OPTION])
        # set on every BEGIN so a shortened wait never outlives its transaction
        conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(wait * 1000)}")
        if options.get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(
    database_url: str,
    busy_timeout: float = 5.0,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async engine configured for exclusive-write transactions."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = busy_timeout

    engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
    )
    if engine.dialect.name == "sqlite":
        _install_sqlite_hooks(engine, busy_timeout)
    return engine


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            busy_timeout=settings.busy_timeout,
            echo=settings.debug,
        )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Get the session factory bound to the global engine."""
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = create_sessionmaker(get_engine())
    return _sessionmaker


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables. Safe to call on an existing database."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Dispose of the global engine."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _sessionmaker = None


async def _rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except Exception as exc:
        # the original failure is what the caller needs to see
        logger.warning("rollback_failed", error=str(exc))


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    busy_timeout: float | None = None,
) -> AsyncGenerator[AsyncSession]:
    """Run a block as one all-or-nothing transaction.

    Commits when the block exits normally. On any exception, including
    cancellation, rollback is attempted and the error propagates. Driver
    errors are translated into ConflictError or PersistenceError.

    ``busy_timeout`` shortens how long SQLite waits for the write lock in
    this transaction; it never extends the engine's own wait.

    Usage:
        async with transaction() as session:
            await ResourceStore(session).decrement_available(resource_id)
    """
    factory = session_factory or get_sessionmaker()
    async with factory() as session:
        try:
            if busy_timeout is not None:
                await session.connection(
                    execution_options={BUSY_TIMEOUT_OPTION: busy_timeout}
                )
            yield session
            await session.commit()
        except DBAPIError as exc:
            await _rollback(session)
            raise storage_error_from(exc) from exc
        except BaseException:
            await _rollback(session)
            raise


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession]:
    """Get an async session for read-only queries.

    On SQLite the transaction starts deferred, so readers never queue for
    the write lock behind acquire and release.

    Usage:
        async with get_session() as session:
            result = await session.execute(select(Resource))
    """
    factory = session_factory or get_sessionmaker()
    async with factory() as session:
        try:
            await session.connection(execution_options={READ_ONLY_OPTION: True})
            yield session
            # ends the read transaction; loaded rows stay usable
            await session.commit()
        except BaseException:
            await _rollback(session)
            raise
