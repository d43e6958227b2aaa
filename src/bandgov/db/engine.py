"""Async SQLAlchemy engine and session factory.

Usage:
    engine = create_engine(settings.database_url)
    async with get_session(engine) as session:
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

from bandgov.db.models import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    On SQLite the driver's implicit transaction handling is switched off and
    ``BEGIN`` is emitted explicitly, so that SAVEPOINTs (used for the atomic
    effects transaction) behave like on any other database.
    """
    if not database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)

    engine = create_async_engine(database_url, echo=False, connect_args={"timeout": 15})

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, connection_record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
        cursor.execute("PRAGMA busy_timeout=15000")
        # Without this all FK declarations are decorative.
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        dbapi_conn.isolation_level = None  # type: ignore[union-attr]

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn: object) -> None:
        conn.exec_driver_sql("BEGIN")  # type: ignore[union-attr]

    return engine


# One session factory per engine instance, keyed by sync_engine identity so
# multiple test engines stay isolated.
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
        except Exception:  # Re-raise pattern: must catch all to ensure rollback on any error
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables that don't exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("schema_ready tables=%d", len(Base.metadata.tables))
