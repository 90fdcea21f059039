"""Shared scheduling and locking for reconciler jobs.

A reconciler job repairs or prunes persistent state in the background.
Several server instances may run the same job against one database, so
every run:

1. takes the job's :class:`~meter_core.state.locks.NamedLock` without
   waiting, and skips the run when another instance holds it;
2. executes bounded batch statements, one transaction per batch, until the
   backlog is drained;
3. releases the lock in ``finally``, even when a batch fails.

Scheduling is one asyncio task per job: an initial delay, then a fixed
interval.  A job never overlaps itself.  :meth:`ReconcilerJob.stop` lets an
in-flight run finish its current batch and refuses to start new ones.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from meter_core.state.database import session_factory_for
from meter_core.state.locks import NamedLock
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Summary of one run."""

    job: str
    lock_acquired: bool
    counts: dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return not self.lock_acquired

    def summary(self) -> str:
        parts = [f"{name}={value}" for name, value in self.counts.items()]
        parts.append(f"duration_ms={self.duration_ms}")
        return f"{self.job} complete: " + ", ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "lock_acquired": self.lock_acquired,
            "counts": dict(self.counts),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class ReconcilerJob:
    """Base class: subclasses set ``name`` / ``lock_name`` and implement :meth:`_execute`.

    Parameters
    ----------
    engine:
        Engine of the shared database.
    interval_seconds:
        Delay between the end of one run and the start of the next.
    initial_delay_seconds:
        Delay before the first run after :meth:`start`.
    enabled:
        When ``False``, :meth:`start` is a no-op.  :meth:`run_once` still works.
    lock_ttl_seconds:
        TTL of row-based locks on backends without advisory locks.
    clock:
        Returns the current aware UTC time; cut-offs are computed from it.
    """

    name: str = "reconciler"
    lock_name: str = "keymeter_reconciler"

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        interval_seconds: float,
        initial_delay_seconds: float = 0.0,
        enabled: bool = True,
        lock_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory: async_sessionmaker[AsyncSession] = session_factory_for(engine)
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._enabled = enabled
        self._lock_ttl = lock_ttl_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._running = False
        self._stopping = False
        self._in_cycle = False
        self._task: asyncio.Task[None] | None = None
        self._run_lock = asyncio.Lock()
        self.last_result: JobResult | None = None

    @property
    def running(self) -> bool:
        """Whether the schedule loop is active."""
        return self._running

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def stopping(self) -> bool:
        return self._stopping

    # -- scheduling ---------------------------------------------------------

    async def start(self) -> None:
        """Schedule the job: initial delay, then every interval."""
        if not self._enabled:
            logger.info("%s disabled; not scheduling", self.name)
            return
        if self._running:
            logger.warning("%s already running; ignoring start()", self.name)
            return
        self._running = True
        self._stopping = False
        self._task = asyncio.create_task(self._run_loop(), name=f"keymeter-{self.name}")
        logger.info(
            "%s scheduled: interval=%.0fs initial_delay=%.0fs",
            self.name,
            self._interval,
            self._initial_delay,
        )

    async def stop(self) -> None:
        """Stop scheduling.  An in-flight run finishes its current batch first.

        A schedule that is only sleeping is cancelled at once.  If ``stop()``
        itself is cancelled the cancellation propagates.
        """
        self._running = False
        self._stopping = True
        task, self._task = self._task, None
        if task is None:
            return
        if not self._in_cycle:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        logger.info("%s stopped", self.name)

    async def _run_loop(self) -> None:
        await asyncio.sleep(self._initial_delay)
        while self._running:
            await self._run_cycle()
            if not self._running:
                break
            await asyncio.sleep(self._interval)

    async def _run_cycle(self) -> None:
        """One scheduled run.  Errors are logged and never end the loop."""
        self._in_cycle = True
        try:
            await self._run_locked()
        except asyncio.CancelledError:
            raise
        except (OperationalError, InterfaceError) as exc:
            logger.error("%s database error: %s", self.name, exc, exc_info=True)
        except Exception as exc:
            logger.critical("%s unexpected error: %s", self.name, exc, exc_info=True)
        finally:
            self._in_cycle = False

    # -- execution ----------------------------------------------------------

    async def run_once(self) -> JobResult:
        """Run the job now, outside the schedule.

        Returns a result with ``lock_acquired=False`` when another runner
        holds the lock.  Batch errors are recorded on the result and logged.
        An explicit run drains the backlog even after :meth:`stop`.
        """
        self._stopping = False
        return await self._run_locked()

    async def _run_locked(self) -> JobResult:
        async with self._run_lock:
            started = time.monotonic()
            lock = NamedLock(self._engine, self.lock_name, ttl_seconds=self._lock_ttl)
            if not await lock.try_acquire():
                logger.warning("%s skipped (lock busy)", self.name)
                result = JobResult(job=self.name, lock_acquired=False)
                self.last_result = result
                return result

            counts: dict[str, int] = {}
            error: str | None = None
            logger.info("%s acquired lock '%s'", self.name, self.lock_name)
            try:
                await self._execute(counts)
            except Exception as exc:
                error = str(exc)
                logger.error("%s error after %s: %s", self.name, counts, exc, exc_info=True)
            finally:
                await lock.release()

            result = JobResult(
                job=self.name,
                lock_acquired=True,
                counts=counts,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=error,
            )
            logger.info(result.summary(), extra={"job": result.to_dict()})
            await self._after_run(result)
            self.last_result = result
            return result

    async def _execute(self, counts: dict[str, int]) -> None:
        """Perform the batches, updating *counts* in place as they commit."""
        raise NotImplementedError

    async def _after_run(self, result: JobResult) -> None:
        """Hook for subclasses that publish the summary elsewhere."""

    async def _drain(
        self,
        counts: dict[str, int],
        label: str,
        batch: Any,
        batch_size: int,
        *,
        until_short: bool = False,
    ) -> None:
        """Repeat *batch* in its own transaction until the backlog is gone.

        Stops on a batch that affects zero rows, or, with *until_short*, on
        one that affects fewer than *batch_size* rows.
        """
        counts.setdefault(label, 0)
        while not self._stopping:
            async with self._session_factory() as session, session.begin():
                affected = await batch(session, batch_size)
            counts[label] += affected
            if affected == 0 or (until_short and affected < batch_size):
                break
