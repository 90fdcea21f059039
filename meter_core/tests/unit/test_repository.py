"""Unit tests for the keymeter repositories.

These tests use an in-memory SQLite database via aiosqlite so they can
run without a PostgreSQL instance.

Covers:
- Plan upsert by slug
- Newest-key lookups and the prefix tie-break
- Bulk disable by subscription id OR email
- Lazy usage rows and atomic counter increments
- Row-based job locks (acquire, contention, release, expiry)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from meter_core.state.repository import (
    ApiKeyRepository,
    JobLockRepository,
    PlanRepository,
    UsageRepository,
    normalize_email,
)
from meter_core.state.tables import ApiKeyTable, JobLockTable
from sqlalchemy import select, update

# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlanRepository:
    @pytest.mark.asyncio
    async def test_upsert_inserts_then_updates(self, session) -> None:
        repo = PlanRepository(session)
        plan = await repo.upsert("starter", name="Starter", monthly_quota_files=5)
        assert plan.id is not None
        assert plan.monthly_quota_files == 5

        updated = await repo.upsert("starter", name="Starter", monthly_quota_files=50)
        assert updated.id == plan.id
        assert updated.monthly_quota_files == 50
        assert len(await repo.list_all()) == 1

    @pytest.mark.asyncio
    async def test_lookup_by_slug_and_id(self, session) -> None:
        repo = PlanRepository(session)
        plan = await repo.upsert("pro", name="Pro")
        assert (await repo.get_by_slug("pro")).id == plan.id
        assert (await repo.get_by_id(plan.id)).plan_slug == "pro"
        assert await repo.get_by_slug("missing") is None


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class TestApiKeyRepository:
    @pytest.mark.asyncio
    async def test_prefix_tie_break_prefers_newest(self, session) -> None:
        repo = ApiKeyRepository(session)
        old = await repo.create(key_prefix="kmx_live_aaaaaaa", key_hash="h1", status="active")
        new = await repo.create(key_prefix="kmx_live_aaaaaaa", key_hash="h2", status="active")
        base = datetime(2024, 1, 1, tzinfo=UTC)
        await session.execute(update(ApiKeyTable).where(ApiKeyTable.id == old.id).values(updated_at=base))
        await session.execute(
            update(ApiKeyTable).where(ApiKeyTable.id == new.id).values(updated_at=base + timedelta(hours=1))
        )
        session.expire_all()

        found = await repo.find_newest_by_prefix("kmx_live_aaaaaaa")
        assert found is not None
        assert found.id == new.id

    @pytest.mark.asyncio
    async def test_prefix_tie_break_same_timestamp_uses_id(self, session) -> None:
        repo = ApiKeyRepository(session)
        a = await repo.create(key_prefix="kmx_live_bbbbbbb", key_hash="h1")
        b = await repo.create(key_prefix="kmx_live_bbbbbbb", key_hash="h2")
        same = datetime(2024, 1, 1, tzinfo=UTC)
        await session.execute(
            update(ApiKeyTable).where(ApiKeyTable.key_prefix == "kmx_live_bbbbbbb").values(updated_at=same)
        )
        session.expire_all()

        found = await repo.find_newest_by_prefix("kmx_live_bbbbbbb")
        assert found.id == max(a.id, b.id)

    @pytest.mark.asyncio
    async def test_find_for_identity_falls_back_to_email(self, session) -> None:
        repo = ApiKeyRepository(session)
        row = await repo.create(customer_email="user@example.com", subscription_id="sub_1")

        assert (await repo.find_for_identity("sub_1", None)).id == row.id
        assert (await repo.find_for_identity("sub_unknown", "User@Example.com ")).id == row.id
        assert await repo.find_for_identity(None, None) is None

    @pytest.mark.asyncio
    async def test_disable_matching_is_an_or(self, session) -> None:
        repo = ApiKeyRepository(session)
        by_sub = await repo.create(subscription_id="sub_1", customer_email="a@example.com", status="active")
        by_email = await repo.create(subscription_id="sub_2", customer_email="b@example.com", status="active")
        other = await repo.create(subscription_id="sub_3", customer_email="c@example.com", status="active")

        affected = await repo.disable_matching(subscription_id="sub_1", email="B@example.com", reason="cancelled")
        assert affected == 2

        session.expire_all()
        assert (await repo.get_by_id(by_sub.id)).status == "disabled"
        assert (await repo.get_by_id(by_email.id)).disabled_reason == "cancelled"
        assert (await repo.get_by_id(other.id)).status == "active"
        assert await repo.is_active(other.id)
        assert not await repo.is_active(by_sub.id)

    @pytest.mark.asyncio
    async def test_disable_matching_requires_identifier(self, session) -> None:
        with pytest.raises(ValueError):
            await ApiKeyRepository(session).disable_matching(subscription_id=None, email="  ")


def test_normalize_email() -> None:
    assert normalize_email("  Foo@Example.COM ") == "foo@example.com"
    assert normalize_email("   ") is None
    assert normalize_email(None) is None


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class TestUsageRepository:
    @pytest.mark.asyncio
    async def test_insert_zeroed_conflict_returns_none(self, session) -> None:
        key = await ApiKeyRepository(session).create(status="active")
        repo = UsageRepository(session)

        first = await repo.insert_zeroed(key.id, "2024-03")
        assert first is not None
        assert first.used_files == 0

        second = await repo.insert_zeroed(key.id, "2024-03")
        assert second is None
        # The enclosing transaction is still usable after the conflict.
        assert (await repo.get(key.id, "2024-03")) is not None

    @pytest.mark.asyncio
    async def test_increment_counts_per_endpoint(self, session) -> None:
        key = await ApiKeyRepository(session).create(status="active")
        repo = UsageRepository(session)
        await repo.insert_zeroed(key.id, "2024-03")

        await repo.increment(key.id, "2024-03", endpoint="pdf", files=3, bytes_in=100, bytes_out=40, failed=False)
        await repo.increment(
            key.id,
            "2024-03",
            endpoint="image",
            files=1,
            bytes_in=10,
            bytes_out=0,
            failed=True,
            error_code="conversion_failed",
            error_message="boom",
        )
        session.expire_all()

        row = await repo.get(key.id, "2024-03")
        assert row.used_files == 4
        assert row.total_calls == 2
        assert row.bytes_in == 110
        assert row.bytes_out == 40
        assert row.pdf_calls == 1
        assert row.pdf_files == 3
        assert row.image_calls == 1
        assert row.errors == 1
        assert row.last_error_code == "conversion_failed"

    @pytest.mark.asyncio
    async def test_increment_missing_row_is_noop(self, session) -> None:
        changed = await UsageRepository(session).increment(
            "missing", "2024-03", endpoint="pdf", files=1, bytes_in=0, bytes_out=0, failed=False
        )
        assert changed == 0


# ---------------------------------------------------------------------------
# Job locks
# ---------------------------------------------------------------------------


class TestJobLockRepository:
    @pytest.mark.asyncio
    async def test_acquire_contend_release(self, session) -> None:
        repo = JobLockRepository(session)
        assert await repo.acquire("nightly", "host-a", ttl_seconds=60)
        assert not await repo.acquire("nightly", "host-b", ttl_seconds=60)
        assert await repo.holder_of("nightly") == "host-a"

        # Only the holder can release.
        assert not await repo.release("nightly", "host-b")
        assert await repo.release("nightly", "host-a")
        assert await repo.acquire("nightly", "host-b", ttl_seconds=60)

    @pytest.mark.asyncio
    async def test_expired_lock_is_reaped(self, session) -> None:
        repo = JobLockRepository(session)
        assert await repo.acquire("nightly", "crashed-host", ttl_seconds=60)
        await session.execute(
            update(JobLockTable)
            .where(JobLockTable.lock_name == "nightly")
            .values(expires_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        assert await repo.holder_of("nightly") is None
        assert await repo.acquire("nightly", "host-b", ttl_seconds=60)

        rows = (await session.execute(select(JobLockTable))).scalars().all()
        assert len(rows) == 1
        assert rows[0].holder == "host-b"
