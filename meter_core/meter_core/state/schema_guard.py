"""Self-healing guard for the ``request_log`` audit table.

The audit trail must keep working on databases whose ``request_log`` table
predates the current column set (or was dropped by hand).  Before each
insert the guard makes sure the table exists and carries every column the
ORM defines, adding missing ones with ``ALTER TABLE ... ADD COLUMN``.  The
discovered column list is cached for five minutes, and rows are filtered to
the columns that actually exist, so an insert never fails because of schema
drift.

Schema repair failures are logged and swallowed; audit logging is
best-effort and must never break the request that produced it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy import column, delete, inspect, table
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.schema import CreateIndex

from meter_core.state.tables import RequestLogTable

logger = logging.getLogger(__name__)

REQUEST_LOG_TABLE = RequestLogTable.__tablename__
COLUMN_CACHE_TTL_SECONDS = 300.0


class SchemaGuard:
    """Ensure and introspect the request-log schema.

    Parameters
    ----------
    cache_ttl:
        Seconds a discovered column list stays valid.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        cache_ttl: float = COLUMN_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cached_columns: list[str] | None = None
        self._cached_at = 0.0

    def _cache_fresh(self) -> bool:
        return self._cached_columns is not None and self._clock() - self._cached_at < self._cache_ttl

    def invalidate(self) -> None:
        self._cached_columns = None
        self._cached_at = 0.0

    async def ensure_request_log_schema(self, session: AsyncSession) -> list[str]:
        """Create the table or add missing columns.  Returns columns added."""
        try:
            conn = await session.connection()
            added = await conn.run_sync(_ensure_sync)
        except Exception:
            logger.error("Request log schema check failed", exc_info=True)
            return []
        if added:
            logger.warning("Request log schema repaired: added %s", ", ".join(added))
            self.invalidate()
        return added

    async def get_request_log_columns(self, session: AsyncSession, refresh: bool = False) -> list[str]:
        """Return the column names of ``request_log`` as seen by the database."""
        if not refresh and self._cached_columns is not None and self._cache_fresh():
            return self._cached_columns
        now = self._clock()
        try:
            conn = await session.connection()
            columns = await conn.run_sync(_columns_sync)
        except Exception:
            logger.error("Request log column fetch failed", exc_info=True)
            return []
        self._cached_columns = columns
        self._cached_at = now
        return columns

    async def insert_request_log_row(self, session: AsyncSession, row: dict[str, Any]) -> tuple[bool, int | None]:
        """Insert *row*, keeping only keys that exist as columns.

        Returns
        -------
        tuple[bool, int | None]
            ``(inserted, row_id)``.
        """
        if not self._cache_fresh():
            await self.ensure_request_log_schema(session)
        available = await self.get_request_log_columns(session)
        cols = [name for name in row if name in available]
        if not cols:
            return False, None

        orm_columns = RequestLogTable.__table__.c
        target = table(
            REQUEST_LOG_TABLE,
            *[column(name, orm_columns[name].type) if name in orm_columns else column(name) for name in cols],
        )
        stmt = target.insert().values({name: row[name] for name in cols})

        bind = session.get_bind()
        if "id" in available and getattr(bind.dialect, "insert_returning", False):
            result = await session.execute(stmt.returning(column("id")))
            row_id = result.scalar_one_or_none()
        else:
            result = await session.execute(stmt)
            row_id = getattr(result, "lastrowid", None)
        return True, row_id

    async def probe_request_log(self, session: AsyncSession, api_key_id: str) -> dict[str, Any]:
        """Insert and immediately delete a diagnostic row.

        *api_key_id* must reference an existing key when foreign keys are
        enforced.  The probe runs inside a SAVEPOINT so a failure leaves the
        caller's transaction intact.
        """
        from datetime import UTC, datetime

        try:
            async with session.begin_nested():
                inserted, row_id = await self.insert_request_log_row(
                    session,
                    {
                        "timestamp": datetime.now(UTC),
                        "created_at": datetime.now(UTC),
                        "api_key_id": api_key_id,
                        "endpoint": "diagnostics",
                        "action": "request_log_probe",
                        "status": "test",
                        "ip": "0.0.0.0",
                        "user_agent": "diagnostic",
                        "bytes_in": 0,
                        "bytes_out": 0,
                        "files_processed": 0,
                        "params_json": '{"probe": true, "source": "diagnostics"}',
                    },
                )
                cleaned_up = False
                if inserted and row_id is not None:
                    await session.execute(delete(RequestLogTable).where(RequestLogTable.id == row_id))
                    cleaned_up = True
        except Exception as exc:
            logger.warning("Request log probe failed: %s", exc)
            return {"success": False, "error": str(exc)}
        return {"success": inserted, "inserted_id": row_id, "cleaned_up": cleaned_up}


def _columns_sync(sync_conn: Any) -> list[str]:
    inspector = inspect(sync_conn)
    if not inspector.has_table(REQUEST_LOG_TABLE):
        return []
    return [col["name"] for col in inspector.get_columns(REQUEST_LOG_TABLE)]


def _ensure_sync(sync_conn: Any) -> list[str]:
    inspector = inspect(sync_conn)
    orm_table = RequestLogTable.__table__

    if not inspector.has_table(REQUEST_LOG_TABLE):
        orm_table.create(sync_conn, checkfirst=True)
        return [col.name for col in orm_table.columns]

    existing = {col["name"] for col in inspector.get_columns(REQUEST_LOG_TABLE)}
    added: list[str] = []
    preparer = sync_conn.dialect.identifier_preparer
    for col in orm_table.columns:
        if col.name in existing:
            continue
        # Added columns are always nullable: existing rows have no value.
        col_type = col.type.compile(dialect=sync_conn.dialect)
        sync_conn.exec_driver_sql(
            f"ALTER TABLE {preparer.quote(REQUEST_LOG_TABLE)} ADD COLUMN {preparer.quote(col.name)} {col_type}"
        )
        added.append(col.name)

    if added:
        existing_indexes = {ix["name"] for ix in inspector.get_indexes(REQUEST_LOG_TABLE)}
        for index in orm_table.indexes:
            if index.name not in existing_indexes and all(c.name in existing or c.name in added for c in index.columns):
                sync_conn.execute(CreateIndex(index))
    return added


# Process-wide guard shared by the request path.
default_guard = SchemaGuard()
