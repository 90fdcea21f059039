"""Tests for the expiry watcher's soft-disable and purge stages."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from meter_core.state.repository import ApiKeyRepository, UsageRepository
from meter_core.state.tables import ApiKeyTable, RequestLogTable, UsagePeriodTable
from sqlalchemy import func, select

from meter_api.jobs import ExpiryWatcher

_NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


async def _seed(session_factory) -> dict[str, str]:
    async with session_factory() as session, session.begin():
        repo = ApiKeyRepository(session)
        expired = await repo.create(status="active", valid_until=_NOW - timedelta(days=1))
        boundary = await repo.create(
            status="active", valid_until=_NOW, subscription_status="past_due", license_key="LEGACY"
        )
        live = await repo.create(status="active", valid_until=_NOW + timedelta(days=1))
        lifetime = await repo.create(status="active", valid_until=None)
        cancelled = await repo.create(
            status="disabled", disabled_reason="cancelled", valid_until=_NOW - timedelta(days=5)
        )
    return {
        "expired": expired.id,
        "boundary": boundary.id,
        "live": live.id,
        "lifetime": lifetime.id,
        "cancelled": cancelled.id,
    }


async def _get(session_factory, key_id: str) -> ApiKeyTable | None:
    async with session_factory() as session:
        return await session.get(ApiKeyTable, key_id)


@pytest.mark.asyncio
async def test_disables_due_keys_only(engine, session_factory) -> None:
    ids = await _seed(session_factory)
    watcher = ExpiryWatcher(engine, batch_size=1, interval_seconds=60, clock=lambda: _NOW)

    result = await watcher.run_once()

    assert result.lock_acquired
    assert result.error is None
    assert result.counts == {"disabled": 2}

    expired = await _get(session_factory, ids["expired"])
    assert expired.status == "disabled"
    assert expired.disabled_reason == "expired"
    assert expired.subscription_status == "expired"

    boundary = await _get(session_factory, ids["boundary"])
    assert boundary.status == "disabled"
    # An existing subscription status is kept.
    assert boundary.subscription_status == "past_due"
    assert boundary.license_key is None

    assert (await _get(session_factory, ids["live"])).status == "active"
    assert (await _get(session_factory, ids["lifetime"])).status == "active"
    assert (await _get(session_factory, ids["cancelled"])).disabled_reason == "cancelled"


@pytest.mark.asyncio
async def test_second_run_is_a_noop(engine, session_factory) -> None:
    await _seed(session_factory)
    watcher = ExpiryWatcher(engine, interval_seconds=60, clock=lambda: _NOW)

    await watcher.run_once()
    again = await watcher.run_once()

    assert again.counts == {"disabled": 0}
    assert watcher.last_result is again


@pytest.mark.asyncio
async def test_purge_removes_expired_keys_and_dependents(engine, session_factory) -> None:
    ids = await _seed(session_factory)
    async with session_factory() as session, session.begin():
        await UsageRepository(session).insert_zeroed(ids["expired"], "2024-02")
        session.add(RequestLogTable(api_key_id=ids["expired"], endpoint="pdf", status="success"))
        await UsageRepository(session).insert_zeroed(ids["cancelled"], "2024-02")

    watcher = ExpiryWatcher(engine, purge_enabled=True, interval_seconds=60, clock=lambda: _NOW)
    result = await watcher.run_once()

    assert result.counts == {"disabled": 2, "purged": 2}
    assert await _get(session_factory, ids["expired"]) is None
    assert await _get(session_factory, ids["boundary"]) is None
    # Keys disabled for other reasons survive the purge.
    assert await _get(session_factory, ids["cancelled"]) is not None

    async with session_factory() as session:
        logs = await session.scalar(select(func.count()).select_from(RequestLogTable))
        usage_keys = (await session.execute(select(UsagePeriodTable.api_key_id))).scalars().all()
    assert logs == 0
    assert usage_keys == [ids["cancelled"]]


@pytest.mark.asyncio
async def test_summary_line(engine) -> None:
    watcher = ExpiryWatcher(engine, interval_seconds=60, clock=lambda: _NOW)
    result = await watcher.run_once()
    assert result.summary().startswith("expiry_watcher complete: disabled=0, duration_ms=")
    assert result.to_dict()["job"] == "expiry_watcher"
