"""Shared fixtures for meter_api tests.

The gate services run against an in-memory SQLite database (aiosqlite on a
single static connection).  Keys are hashed with bcrypt at the minimum cost
so the suite stays fast.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from meter_core.config import Settings
from meter_core.keys.hasher import BcryptStrategy, KeyHasher
from meter_core.state.database import create_tables, session_factory_for
from meter_core.state.repository import PlanRepository
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from meter_api import dependencies
from meter_api.config import APISettings
from meter_api.main import create_app
from meter_api.services.key_lifecycle import KeyLifecycle
from meter_api.services.key_resolver import KeyResolver, TierKeys
from meter_api.services.quota_ledger import QuotaLedger

OWNER_KEY = "owner-key-0123456789"
PUBLIC_KEY = "public-key-0123456789"
INTERNAL_TOKEN = "internal-test-token"


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture
def hasher() -> KeyHasher:
    return KeyHasher([BcryptStrategy(rounds=4)])


@pytest.fixture
def settings() -> APISettings:
    return APISettings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        owner_keys=[OWNER_KEY],
        public_keys=[PUBLIC_KEY],
        internal_token=INTERNAL_TOKEN,
        auto_create_tables=False,
        expiry_enabled=False,
        orphan_cleanup_enabled=False,
        retention_enabled=False,
    )


@pytest.fixture
def lifecycle(session_factory, hasher) -> KeyLifecycle:
    return KeyLifecycle(session_factory, hasher, valid_from_grace_seconds=120)


@pytest.fixture
def resolver(hasher) -> KeyResolver:
    return KeyResolver(TierKeys.from_lists([OWNER_KEY], [PUBLIC_KEY]), hasher)


@pytest.fixture
def ledger(session_factory) -> QuotaLedger:
    return QuotaLedger(session_factory)


@pytest_asyncio.fixture
async def plans(session_factory):
    """Seed a free plan, a 5-file starter plan and a pro plan without PDF."""
    async with session_factory() as session, session.begin():
        repo = PlanRepository(session)
        free = await repo.upsert("free", name="Free", monthly_quota_files=3, is_free=True)
        starter = await repo.upsert("starter", name="Starter", monthly_quota_files=5, max_files_per_request=5)
        pro = await repo.upsert(
            "pro",
            name="Pro",
            monthly_quota_files=None,
            timeout_seconds=600,
            max_total_upload_mb=100,
            allow_pdf=False,
        )
    return {"free": free, "starter": starter, "pro": pro}


@pytest.fixture
def core_settings() -> Settings:
    return Settings(_env_file=None, hash_preference=["bcrypt"], bcrypt_rounds=4)


@pytest.fixture
def app(engine, session_factory, settings, core_settings, monkeypatch) -> Iterator[FastAPI]:
    """A fresh app wired to the in-memory database.

    The lifespan is not run: engine and services are installed directly so
    no reconciler job is started.
    """
    monkeypatch.setattr(dependencies, "_engine", engine)
    monkeypatch.setattr(dependencies, "_session_factory", session_factory)
    dependencies.init_services(settings, session_factory, core_settings)

    application = create_app()
    application.dependency_overrides[dependencies.get_settings] = lambda: settings
    yield application
    dependencies.dispose_services()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
