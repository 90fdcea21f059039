"""Engine construction and session handling for the gate's state store.

The URL scheme picks the backend.  ``postgresql+asyncpg://`` is the
production store and the only one with advisory locks.  ``sqlite+aiosqlite://``
serves the CLI, single-node deployments and the test suite.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from meter_core.state.sqlite_adapter import get_local_engine, sqlite_path_from_url

logger = logging.getLogger(__name__)

# Server-side guards so a stuck admission never holds a row lock for long.
_PG_SERVER_SETTINGS = {"statement_timeout": "30000", "lock_timeout": "10000"}

# id(engine) -> (engine, factory); the engine reference keeps the id alive.
_session_factories: dict[int, tuple[AsyncEngine, async_sessionmaker[AsyncSession]]] = {}


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Build an engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite:///path``.
    pool_size, max_overflow:
        Connection pool sizing.  Only PostgreSQL uses them.

    Returns
    -------
    AsyncEngine
    """
    if database_url.startswith("sqlite"):
        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def dialect_name(bind: Any) -> str:
    """Dialect of a session, connection or engine: ``postgresql`` or ``sqlite``."""
    if isinstance(bind, AsyncSession):
        bind = bind.get_bind()
    dialect = getattr(bind, "dialect", None)
    if dialect is None:
        return str(getattr(bind, "url", ""))
    return str(getattr(dialect, "name", ""))


def is_postgres(bind: Any) -> bool:
    return "postgresql" in dialect_name(bind)


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for *engine*, created on first use."""
    entry = _session_factories.get(id(engine))
    if entry is None or entry[0] is not engine:
        entry = (engine, async_sessionmaker(engine, expire_on_commit=False))
        _session_factories[id(engine)] = entry
    return entry[1]


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with session_factory_for(engine)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing keymeter tables.  Existing tables are left alone."""
    from meter_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema ensured on %s", dialect_name(engine))


async def ping(conn: AsyncConnection) -> bool:
    """``SELECT 1`` round trip for the health endpoint."""
    return (await conn.execute(text("SELECT 1"))).scalar_one() == 1
