"""Async SQLAlchemy engine, session factory, and the shared database handle.

Usage:
    database = Database(settings.database_url)
    await database.connect()
    async with get_session(database.engine) as session:
        ...
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from anarchy.db.models import Base

logger = logging.getLogger(__name__)


class DatabaseNotConnectedError(RuntimeError):
    """Raised when the database handle is used before ``connect()``."""


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Enables WAL journal mode and a 15-second busy timeout so concurrent
    interactions (two staff accepting the same case, say) wait on the write
    lock instead of failing with "database is locked".
    """
    connect_args: dict[str, object] = {"timeout": 15}

    engine = create_async_engine(database_url, echo=False, connect_args=connect_args)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, connection_record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=15000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


# One session factory per engine instance, keyed by the sync engine's identity
# so separate test engines stay isolated.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a cached session factory bound to *engine*."""
    key = id(engine.sync_engine)
    if key not in _session_factories:
        _session_factories[key] = async_sessionmaker(engine, expire_on_commit=False)
    return _session_factories[key]


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session that auto-commits on success, rolls back on error."""
    factory = create_session_factory(engine)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Roll back on any error, then re-raise
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(engine: AsyncEngine) -> None:
    """Dispose *engine* and drop its cached session factory."""
    _session_factories.pop(id(engine.sync_engine), None)
    await engine.dispose()


class Database:
    """Process-wide connection handle.

    Created once at startup and passed to whatever needs storage. Accessing
    ``engine`` before ``connect()`` raises DatabaseNotConnectedError.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._engine: AsyncEngine | None = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseNotConnectedError(
                "Database not connected. Call connect() before using the database."
            )
        return self._engine

    async def connect(self) -> AsyncEngine:
        """Create the engine and tables. Safe to call more than once."""
        if self._engine is None:
            self._engine = create_engine(self.database_url)
            await create_tables(self._engine)
            logger.info("database_connected url=%s", self.database_url)
        return self._engine

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await dispose_engine(self._engine)
        self._engine = None
        logger.info("database_disconnected")
