"""Database-granted named locks for reconciler jobs.

A :class:`NamedLock` serialises one maintenance job across every server
instance that shares the database.  Acquisition never blocks: a held lock
means another instance already owns the work, and the caller simply skips
this tick.

* PostgreSQL: ``pg_try_advisory_lock`` on a dedicated connection that is
  held until :meth:`NamedLock.release`.  The lock dies with the connection,
  so a crashed process cannot leave it behind.
* Other dialects (SQLite): a row in ``job_locks`` with a TTL, see
  :class:`~meter_core.state.repository.JobLockRepository`.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from meter_core.state.database import get_session, is_postgres
from meter_core.state.repository import JobLockRepository, default_lock_holder

logger = logging.getLogger(__name__)


class NamedLock:
    """Non-blocking, cross-process mutex keyed by *name*.

    Parameters
    ----------
    engine:
        Engine of the shared database.
    name:
        Fixed lock name, one per job type.
    ttl_seconds:
        Lifetime of a row-based lock before another holder may reap it.
        Unused on PostgreSQL.
    """

    def __init__(self, engine: AsyncEngine, name: str, ttl_seconds: int = 3600) -> None:
        self._engine = engine
        self._name = name
        self._ttl_seconds = ttl_seconds
        self._holder = f"{default_lock_holder()}:{uuid.uuid4().hex[:8]}"
        self._conn: AsyncConnection | None = None
        self._held = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def held(self) -> bool:
        return self._held

    async def try_acquire(self) -> bool:
        """Attempt to take the lock without waiting."""
        if self._held:
            return True
        if is_postgres(self._engine):
            self._held = await self._pg_try_acquire()
        else:
            async with get_session(self._engine) as session:
                self._held = await JobLockRepository(session).acquire(
                    self._name, self._holder, ttl_seconds=self._ttl_seconds
                )
        return self._held

    async def release(self) -> None:
        """Release the lock if held.  Never raises."""
        if not self._held:
            await self._close_conn()
            return
        try:
            if is_postgres(self._engine):
                if self._conn is not None:
                    await self._conn.execute(
                        text("SELECT pg_advisory_unlock(hashtext(:name))"),
                        {"name": self._name},
                    )
                    await self._conn.commit()
            else:
                async with get_session(self._engine) as session:
                    await JobLockRepository(session).release(self._name, self._holder)
        except Exception:
            logger.error("Failed to release lock '%s'", self._name, exc_info=True)
        finally:
            self._held = False
            await self._close_conn()

    async def _pg_try_acquire(self) -> bool:
        self._conn = await self._engine.connect()
        try:
            result = await self._conn.execute(
                text("SELECT pg_try_advisory_lock(hashtext(:name))"),
                {"name": self._name},
            )
            got = bool(result.scalar_one())
            await self._conn.commit()
        except Exception:
            await self._close_conn()
            raise
        if not got:
            await self._close_conn()
        return got

    async def _close_conn(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            finally:
                self._conn = None

    async def __aenter__(self) -> bool:
        return await self.try_acquire()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()
