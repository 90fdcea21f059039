"""Shared fixtures for meter_core unit tests.

Every fixture uses SQLite via aiosqlite so the suite runs without a
PostgreSQL instance.  ``engine`` is in-memory (one shared connection);
``file_engine`` is a WAL-mode file database that supports concurrent
connections, needed by the lock tests.
"""

from __future__ import annotations

from pathlib import Path

import pytest_asyncio
from meter_core.state.database import create_tables, session_factory_for
from meter_core.state.sqlite_adapter import get_local_engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path: Path):
    eng = get_local_engine(tmp_path / "state.db")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = session_factory_for(engine)
    async with factory() as s:
        yield s
