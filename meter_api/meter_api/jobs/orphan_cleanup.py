"""Delete usage and audit rows that point at keys which no longer exist.

With foreign keys enforced the cascade keeps these tables clean.  Orphans
still appear after manual deletes on connections that run without FK
enforcement, and after restores of partial dumps.  A row is an orphan only
when a left join to ``api_keys`` finds nothing, so rows of live keys are
never touched.
"""

from __future__ import annotations

import logging

from meter_core.state.tables import ApiKeyTable, RequestLogTable, UsagePeriodTable
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from meter_api.jobs.base import ReconcilerJob

logger = logging.getLogger(__name__)

# (count label, table) in deletion order.
_DEPENDENT_TABLES = (
    ("request_log", RequestLogTable),
    ("usage_periods", UsagePeriodTable),
)


class OrphanCleanup(ReconcilerJob):
    name = "orphan_cleanup"
    lock_name = "keymeter_orphan_cleanup"

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        batch_size: int = 5000,
        interval_seconds: float = 86400,
        initial_delay_seconds: float = 300,
        **kwargs,
    ) -> None:
        super().__init__(
            engine,
            interval_seconds=interval_seconds,
            initial_delay_seconds=initial_delay_seconds,
            **kwargs,
        )
        self._batch_size = batch_size

    async def _execute(self, counts: dict[str, int]) -> None:
        for label, table in _DEPENDENT_TABLES:

            async def _batch(session: AsyncSession, limit: int, table=table) -> int:
                return await self._delete_orphans(session, table, limit)

            await self._drain(counts, label, _batch, self._batch_size)

    @staticmethod
    async def _delete_orphans(session: AsyncSession, table: type, limit: int) -> int:
        orphan_ids = (
            select(table.id)
            .outerjoin(ApiKeyTable, ApiKeyTable.id == table.api_key_id)
            .where(ApiKeyTable.id.is_(None))
            .limit(limit)
            .correlate(None)
        )
        result = await session.execute(
            delete(table)
            .where(table.id.in_(orphan_ids.scalar_subquery()))
            .execution_options(synchronize_session=False)
        )
        affected = result.rowcount or 0
        if affected:
            logger.info("Deleted %d orphaned rows from %s", affected, table.__tablename__)
        return affected
