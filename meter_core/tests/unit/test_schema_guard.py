"""Tests for the self-healing request-log schema guard."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from meter_core.state.database import get_session
from meter_core.state.repository import ApiKeyRepository
from meter_core.state.schema_guard import SchemaGuard
from meter_core.state.tables import RequestLogTable
from sqlalchemy import func, select, text


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _row(api_key_id: str, **extra) -> dict:
    row = {
        "api_key_id": api_key_id,
        "timestamp": datetime.now(UTC),
        "created_at": datetime.now(UTC),
        "endpoint": "pdf",
        "status": "ok",
    }
    row.update(extra)
    return row


@pytest.mark.asyncio
async def test_creates_missing_table(engine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE request_log"))

    guard = SchemaGuard()
    async with get_session(engine) as session:
        added = await guard.ensure_request_log_schema(session)
        assert "api_key_id" in added
        columns = await guard.get_request_log_columns(session, refresh=True)

    assert set(columns) == {col.name for col in RequestLogTable.__table__.columns}


@pytest.mark.asyncio
async def test_adds_missing_columns(engine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE request_log"))
        await conn.execute(
            text(
                "CREATE TABLE request_log ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, api_key_id VARCHAR(64) NOT NULL, "
                "endpoint VARCHAR(32) NOT NULL, status VARCHAR(32) NOT NULL)"
            )
        )

    guard = SchemaGuard()
    async with get_session(engine) as session:
        added = await guard.ensure_request_log_schema(session)
        columns = await guard.get_request_log_columns(session)

    assert "params_json" in added
    assert "user_agent" in added
    assert "endpoint" not in added
    assert "params_json" in columns


@pytest.mark.asyncio
async def test_insert_filters_unknown_keys(engine) -> None:
    guard = SchemaGuard()
    async with get_session(engine) as session:
        key = await ApiKeyRepository(session).create(status="active")
        inserted, row_id = await guard.insert_request_log_row(
            session, _row(key.id, not_a_column="ignored", files_processed=2)
        )
        assert inserted
        assert row_id is not None

        stored = await session.get(RequestLogTable, row_id)
        assert stored.files_processed == 2
        assert stored.endpoint == "pdf"


@pytest.mark.asyncio
async def test_insert_with_no_known_columns_is_skipped(engine) -> None:
    guard = SchemaGuard()
    async with get_session(engine) as session:
        inserted, row_id = await guard.insert_request_log_row(session, {"bogus": 1})
    assert inserted is False
    assert row_id is None


@pytest.mark.asyncio
async def test_column_cache_expires(engine) -> None:
    clock = _FakeClock()
    guard = SchemaGuard(cache_ttl=300, clock=clock)
    async with get_session(engine) as session:
        first = await guard.get_request_log_columns(session)

    async with engine.begin() as conn:
        await conn.execute(text("ALTER TABLE request_log ADD COLUMN extra_note TEXT"))

    async with get_session(engine) as session:
        assert await guard.get_request_log_columns(session) == first
        clock.now += 301
        refreshed = await guard.get_request_log_columns(session)

    assert "extra_note" in refreshed
    assert "extra_note" not in first


@pytest.mark.asyncio
async def test_probe_cleans_up(engine) -> None:
    guard = SchemaGuard()
    async with get_session(engine) as session:
        key = await ApiKeyRepository(session).create(status="active")
        result = await guard.probe_request_log(session, key.id)
        remaining = await session.scalar(select(func.count()).select_from(RequestLogTable))

    assert result["success"] is True
    assert result["cleaned_up"] is True
    assert remaining == 0
