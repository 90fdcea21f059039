"""Expire API keys whose validity window has closed.

Keys move through two stages:

* **soft**: ``active`` with ``valid_until <= now`` becomes ``disabled``
  with ``disabled_reason="expired"``.  The subscription status is set to
  ``"expired"`` only when it was empty, and any legacy plaintext
  ``license_key`` is cleared.
* **purge** (opt-in): keys already disabled as expired are deleted together
  with their usage rows and request log.

The resolver rejects an expired key on its own, so the watcher only keeps
the stored status honest.  Running it twice changes nothing the second time.
"""

from __future__ import annotations

import logging

from meter_core.state.tables import ApiKeyTable, RequestLogTable, UsagePeriodTable
from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from meter_api.jobs.base import ReconcilerJob

logger = logging.getLogger(__name__)

EXPIRED_REASON = "expired"


class ExpiryWatcher(ReconcilerJob):
    """Soft-disable expired keys in batches, optionally purging them afterwards."""

    name = "expiry_watcher"
    lock_name = "keymeter_api_keys_expiry"

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        batch_size: int = 500,
        purge_enabled: bool = False,
        interval_seconds: float = 600,
        initial_delay_seconds: float = 30,
        **kwargs,
    ) -> None:
        super().__init__(
            engine,
            interval_seconds=interval_seconds,
            initial_delay_seconds=initial_delay_seconds,
            **kwargs,
        )
        self._batch_size = batch_size
        self._purge_enabled = purge_enabled

    async def _execute(self, counts: dict[str, int]) -> None:
        await self._drain(counts, "disabled", self._disable_batch, self._batch_size)
        if self._purge_enabled:
            await self._drain(counts, "purged", self._purge_batch, self._batch_size)

    async def _disable_batch(self, session: AsyncSession, limit: int) -> int:
        now = self._clock()
        due = (
            select(ApiKeyTable.id)
            .where(
                ApiKeyTable.status == "active",
                ApiKeyTable.valid_until.is_not(None),
                ApiKeyTable.valid_until <= now,
            )
            .limit(limit)
            .correlate(None)
        )
        stmt = (
            update(ApiKeyTable)
            .where(ApiKeyTable.id.in_(due.scalar_subquery()))
            .values(
                status="disabled",
                disabled_reason=EXPIRED_REASON,
                subscription_status=case(
                    (
                        or_(
                            ApiKeyTable.subscription_status.is_(None),
                            ApiKeyTable.subscription_status == "",
                        ),
                        EXPIRED_REASON,
                    ),
                    else_=ApiKeyTable.subscription_status,
                ),
                license_key=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        affected = result.rowcount or 0
        if affected:
            logger.debug("Disabled %d expired keys", affected)
        return affected

    async def _purge_batch(self, session: AsyncSession, limit: int) -> int:
        due = (
            select(ApiKeyTable.id)
            .where(
                ApiKeyTable.status == "disabled",
                or_(
                    ApiKeyTable.disabled_reason == EXPIRED_REASON,
                    ApiKeyTable.subscription_status == EXPIRED_REASON,
                ),
            )
            .limit(limit)
        )
        key_ids = list((await session.execute(due)).scalars().all())
        if not key_ids:
            return 0

        # Dependents first: SQLite connections may run without FK enforcement.
        for table in (RequestLogTable, UsagePeriodTable):
            await session.execute(
                delete(table)
                .where(table.api_key_id.in_(key_ids))
                .execution_options(synchronize_session=False)
            )
        result = await session.execute(
            delete(ApiKeyTable)
            .where(ApiKeyTable.id.in_(key_ids))
            .execution_options(synchronize_session=False)
        )
        affected = result.rowcount or 0
        logger.info("Purged %d expired keys", affected)
        return affected
