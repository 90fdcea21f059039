"""Repository layer for the keymeter state store.

Each repository wraps an ``AsyncSession`` and exposes the small set of
queries the services need.  Repositories never commit; the caller owns the
transaction boundary and repositories only ``flush()``.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from meter_core.state.database import dialect_name
from meter_core.state.tables import (
    ApiKeyTable,
    JobLockTable,
    PlanTable,
    RequestLogTable,
    UsagePeriodTable,
)

logger = logging.getLogger(__name__)

ENDPOINTS: tuple[str, ...] = ("h2i", "image", "pdf", "tools")

# ---------------------------------------------------------------------------
# Dialect helpers
# ---------------------------------------------------------------------------


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``."""
    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def normalize_email(email: str | None) -> str | None:
    """Lower-case and trim an email; empty strings become ``None``."""
    if email is None:
        return None
    value = email.strip().lower()
    return value or None


_ACTIVE_SYNONYMS = frozenset({"active", "activated"})
_DISABLED_SYNONYMS = frozenset({"disabled", "inactive", "cancelled", "canceled", "expired", "blocked"})


def normalize_status(status: Any) -> str:
    """Collapse legacy status spellings to ``active`` / ``disabled``.

    Numeric codes from the old license system map ``3`` to active and
    everything else to disabled.  Unknown strings are returned lower-cased
    and therefore never count as active.
    """
    if status is None:
        return "disabled"
    raw = str(status).strip().lower()
    if not raw:
        return "disabled"
    if raw.isdigit():
        return "active" if int(raw) == 3 else "disabled"
    if raw in _ACTIVE_SYNONYMS:
        return "active"
    if raw in _DISABLED_SYNONYMS:
        return "disabled"
    return raw


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanRepository:
    """Read access to the plan catalogue, plus an operator upsert for seeding."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, plan_id: int) -> PlanTable | None:
        return await self._session.get(PlanTable, plan_id)

    async def get_by_slug(self, plan_slug: str) -> PlanTable | None:
        stmt = select(PlanTable).where(PlanTable.plan_slug == plan_slug).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[PlanTable]:
        result = await self._session.execute(select(PlanTable).order_by(PlanTable.id))
        return list(result.scalars().all())

    async def upsert(self, plan_slug: str, **fields: Any) -> PlanTable:
        """Insert or update a plan by slug and return the stored row."""
        values = {"plan_slug": plan_slug, "updated_at": datetime.now(UTC), **fields}
        await _dialect_upsert(
            self._session,
            PlanTable,
            values=values,
            index_elements=["plan_slug"],
            update_columns=[col for col in values if col != "plan_slug"],
        )
        await self._session.flush()
        plan = await self.get_by_slug(plan_slug)
        if plan is None:
            raise RuntimeError(f"Plan upsert for '{plan_slug}' did not persist")
        await self._session.refresh(plan)
        return plan


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyRepository:
    """Customer key lookups and bulk status changes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, key_id: str) -> ApiKeyTable | None:
        return await self._session.get(ApiKeyTable, key_id)

    async def find_newest_by_prefix(self, prefix: str) -> ApiKeyTable | None:
        """Return the most recently updated key with *prefix*.

        Prefix collisions are resolved deterministically: newest
        ``updated_at`` wins, then highest ``id``.
        """
        stmt = (
            select(ApiKeyTable)
            .where(ApiKeyTable.key_prefix == prefix)
            .order_by(ApiKeyTable.updated_at.desc(), ApiKeyTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_newest_by_subscription(self, subscription_id: str) -> ApiKeyTable | None:
        stmt = (
            select(ApiKeyTable)
            .where(ApiKeyTable.subscription_id == subscription_id)
            .order_by(ApiKeyTable.updated_at.desc(), ApiKeyTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_newest_by_email(self, email: str) -> ApiKeyTable | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        stmt = (
            select(ApiKeyTable)
            .where(ApiKeyTable.customer_email == normalized)
            .order_by(ApiKeyTable.updated_at.desc(), ApiKeyTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_for_identity(
        self,
        subscription_id: str | None = None,
        email: str | None = None,
    ) -> ApiKeyTable | None:
        """Find the newest key by subscription id, falling back to email."""
        if subscription_id:
            found = await self.find_newest_by_subscription(subscription_id)
            if found is not None:
                return found
        if email:
            return await self.find_newest_by_email(email)
        return None

    async def ids_for_identity(self, subscription_id: str | None = None, email: str | None = None) -> list[str]:
        """Ids of every key matching subscription id OR email, newest first."""
        filters = []
        if subscription_id:
            filters.append(ApiKeyTable.subscription_id == subscription_id)
        normalized = normalize_email(email)
        if normalized:
            filters.append(ApiKeyTable.customer_email == normalized)
        if not filters:
            return []
        stmt = (
            select(ApiKeyTable.id)
            .where(or_(*filters))
            .order_by(ApiKeyTable.updated_at.desc(), ApiKeyTable.id.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_page(
        self,
        search: str | None = None,
        *,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[int, list[ApiKeyTable]]:
        """One page of keys, most recently updated first, plus the total count.

        *search* is a substring of the email, subscription id or key prefix.
        """
        filters = []
        if search:
            term = f"%{search}%"
            filters.append(
                or_(
                    ApiKeyTable.customer_email.like(term),
                    ApiKeyTable.subscription_id.like(term),
                    ApiKeyTable.key_prefix.like(term),
                )
            )
        total = await self._session.scalar(select(func.count()).select_from(ApiKeyTable).where(*filters))
        stmt = (
            select(ApiKeyTable)
            .where(*filters)
            .order_by(ApiKeyTable.updated_at.desc(), ApiKeyTable.id.desc())
            .limit(per_page)
            .offset((page - 1) * per_page)
        )
        result = await self._session.execute(stmt)
        return int(total or 0), list(result.scalars().unique().all())

    async def any_id(self) -> str | None:
        result = await self._session.execute(select(ApiKeyTable.id).limit(1))
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> ApiKeyTable:
        now = datetime.now(UTC)
        row = ApiKeyTable(
            id=uuid.uuid4().hex,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def disable_matching(
        self,
        subscription_id: str | None = None,
        email: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Disable every key matching subscription id OR email.

        Returns the number of rows changed.
        """
        filters = []
        if subscription_id:
            filters.append(ApiKeyTable.subscription_id == subscription_id)
        normalized = normalize_email(email)
        if normalized:
            filters.append(ApiKeyTable.customer_email == normalized)
        if not filters:
            raise ValueError("subscription_id or email is required")

        stmt = (
            update(ApiKeyTable)
            .where(or_(*filters))
            .values(
                status="disabled",
                disabled_reason=reason,
                license_key=None,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def is_active(self, key_id: str) -> bool:
        """Return ``True`` if the key exists and its status normalises to active."""
        stmt = select(ApiKeyTable.status).where(ApiKeyTable.id == key_id)
        result = await self._session.execute(stmt)
        status = result.scalar_one_or_none()
        return normalize_status(status) == "active"


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsageRepository:
    """Per-period usage counters."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, api_key_id: str, period: str) -> UsagePeriodTable | None:
        stmt = select(UsagePeriodTable).where(
            UsagePeriodTable.api_key_id == api_key_id,
            UsagePeriodTable.period == period,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_zeroed(self, api_key_id: str, period: str) -> UsagePeriodTable | None:
        """Insert a zeroed usage row inside a SAVEPOINT.

        Returns the new row, or ``None`` if a concurrent writer created the
        same ``(api_key_id, period)`` first.  The enclosing transaction
        stays usable either way.
        """
        now = datetime.now(UTC)
        row = UsagePeriodTable(
            api_key_id=api_key_id,
            period=period,
            used_files=0,
            used_bytes=0,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError:
            logger.debug("Usage row for key=%s period=%s created concurrently", api_key_id, period)
            return None
        return row

    async def increment(
        self,
        api_key_id: str,
        period: str,
        *,
        endpoint: str | None,
        files: int,
        bytes_in: int,
        bytes_out: int,
        failed: bool,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> int:
        """Atomically bump the counters of one usage row.

        Counter arithmetic happens in SQL (``col = col + n``) so concurrent
        requests never lose increments.
        """
        now = datetime.now(UTC)
        t = UsagePeriodTable
        values: dict[str, Any] = {
            "used_files": t.used_files + files,
            "used_bytes": t.used_bytes + bytes_out,
            "total_calls": t.total_calls + 1,
            "total_files_processed": t.total_files_processed + files,
            "bytes_in": t.bytes_in + bytes_in,
            "bytes_out": t.bytes_out + bytes_out,
            "last_activity_at": now,
            "updated_at": now,
        }
        if endpoint in ENDPOINTS:
            calls_col = getattr(t, f"{endpoint}_calls")
            files_col = getattr(t, f"{endpoint}_files")
            values[f"{endpoint}_calls"] = calls_col + 1
            values[f"{endpoint}_files"] = files_col + files
        if failed:
            values["errors"] = t.errors + 1
            values["last_error_code"] = error_code
            values["last_error_message"] = error_message

        stmt = (
            update(t)
            .where(t.api_key_id == api_key_id, t.period == period)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Request log
# ---------------------------------------------------------------------------


class RequestLogRepository:
    """Read access to the request audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_page(
        self,
        api_key_ids: list[str],
        *,
        page: int = 1,
        per_page: int = 20,
        endpoint: str | None = None,
        status: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[int, list[RequestLogTable]]:
        """One page of log rows for *api_key_ids*, newest first, plus the total.

        *status* ``"ok"`` selects successful rows, ``"error"`` every other
        row; any other value must match the stored status exactly.
        """
        if not api_key_ids:
            return 0, []
        t = RequestLogTable
        filters: list[Any] = [t.api_key_id.in_(api_key_ids)]
        if endpoint:
            filters.append(t.endpoint == endpoint.strip().lower())
        if status:
            wanted = status.strip().lower()
            if wanted == "ok":
                filters.append(t.status == "success")
            elif wanted == "error":
                filters.append(t.status != "success")
            else:
                filters.append(t.status == wanted)
        if since is not None:
            filters.append(t.timestamp >= since)
        if until is not None:
            filters.append(t.timestamp <= until)

        total = await self._session.scalar(select(func.count()).select_from(t).where(*filters))
        stmt = (
            select(t)
            .where(*filters)
            .order_by(t.timestamp.desc(), t.id.desc())
            .limit(per_page)
            .offset((page - 1) * per_page)
        )
        result = await self._session.execute(stmt)
        return int(total or 0), list(result.scalars().all())


# ---------------------------------------------------------------------------
# Job locks
# ---------------------------------------------------------------------------


def default_lock_holder() -> str:
    """Identify this process as ``host:pid``."""
    return f"{socket.gethostname()}:{os.getpid()}"


class JobLockRepository:
    """Row-based named locks with a TTL.

    ``acquire`` performs an atomic check-and-insert: if a non-expired lock
    already exists the acquisition fails; expired locks are reaped first.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def acquire(self, lock_name: str, holder: str, ttl_seconds: int = 3600) -> bool:
        now = datetime.now(UTC)

        # 1. Reap a lock left behind by a crashed holder.
        await self._session.execute(
            delete(JobLockTable).where(
                JobLockTable.lock_name == lock_name,
                JobLockTable.expires_at < now,
            )
        )

        # 2. ON CONFLICT DO NOTHING closes the race between check and insert.
        result = await _dialect_upsert_nothing(
            self._session,
            JobLockTable,
            values={
                "lock_name": lock_name,
                "holder": holder,
                "acquired_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
                "details": {"pid": os.getpid()},
            },
            index_elements=["lock_name"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release(self, lock_name: str, holder: str) -> bool:
        result = await self._session.execute(
            delete(JobLockTable).where(
                JobLockTable.lock_name == lock_name,
                JobLockTable.holder == holder,
            )
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def holder_of(self, lock_name: str) -> str | None:
        now = datetime.now(UTC)
        stmt = select(JobLockTable.holder).where(
            JobLockTable.lock_name == lock_name,
            JobLockTable.expires_at >= now,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
