"""Age out old request-log and usage rows.

``request_log`` rows older than *request_log_days* days and
``usage_periods`` rows created more than *usage_months* months ago are
deleted in batches.  Each table is drained until a batch comes back short.

When *log_path* is set, one ``"<iso-timestamp> <summary>"`` line per run is
appended to that file.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import datetime, timedelta
from pathlib import Path

from meter_core.state.tables import RequestLogTable, UsagePeriodTable
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from meter_api.jobs.base import JobResult, ReconcilerJob

logger = logging.getLogger(__name__)


def months_ago(now: datetime, months: int) -> datetime:
    """Return *now* shifted back by whole calendar months.

    The day is clamped to the target month's length, so 31 March minus one
    month is 28 (or 29) February.
    """
    index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


class RetentionCleanup(ReconcilerJob):
    """Batch-delete audit and usage history past its retention window."""

    name = "retention_cleanup"
    lock_name = "keymeter_retention_cleanup"

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        request_log_days: int = 60,
        usage_months: int = 6,
        batch_request_log: int = 20000,
        batch_usage: int = 5000,
        log_path: Path | str | None = None,
        interval_seconds: float = 86400,
        initial_delay_seconds: float = 60,
        **kwargs,
    ) -> None:
        super().__init__(
            engine,
            interval_seconds=interval_seconds,
            initial_delay_seconds=initial_delay_seconds,
            **kwargs,
        )
        self._request_log_days = request_log_days
        self._usage_months = usage_months
        self._batch_request_log = batch_request_log
        self._batch_usage = batch_usage
        self._log_path = Path(log_path) if log_path else None

    def cutoffs(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Return ``(request_log_cutoff, usage_cutoff)`` for *now*."""
        now = now or self._clock()
        return now - timedelta(days=self._request_log_days), months_ago(now, self._usage_months)

    async def _execute(self, counts: dict[str, int]) -> None:
        log_cutoff, usage_cutoff = self.cutoffs()
        logger.info(
            "Retention cut-offs: request_log < %s, usage_periods < %s",
            log_cutoff.isoformat(),
            usage_cutoff.isoformat(),
        )

        async def _log_batch(session: AsyncSession, limit: int) -> int:
            return await self._delete_older(session, RequestLogTable, log_cutoff, limit)

        async def _usage_batch(session: AsyncSession, limit: int) -> int:
            return await self._delete_older(session, UsagePeriodTable, usage_cutoff, limit)

        await self._drain(counts, "request_log", _log_batch, self._batch_request_log, until_short=True)
        await self._drain(counts, "usage_periods", _usage_batch, self._batch_usage, until_short=True)

    @staticmethod
    async def _delete_older(session: AsyncSession, table: type, cutoff: datetime, limit: int) -> int:
        stale_ids = select(table.id).where(table.created_at < cutoff).limit(limit).correlate(None)
        result = await session.execute(
            delete(table)
            .where(table.id.in_(stale_ids.scalar_subquery()))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _after_run(self, result: JobResult) -> None:
        if self._log_path is None or not result.lock_acquired:
            return
        line = f"{self._clock().isoformat()} {result.summary()}\n"
        try:
            await asyncio.to_thread(_append_line, self._log_path, line)
        except OSError as exc:
            logger.warning("Could not append retention log %s: %s", self._log_path, exc)


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(line)
