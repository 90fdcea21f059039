"""Tests for reconciler scheduling, locking and the job registry."""

from __future__ import annotations

import asyncio

import pytest
from meter_core.state.locks import NamedLock

from meter_api.jobs import ExpiryWatcher, OrphanCleanup, RetentionCleanup, build_job, build_jobs
from meter_api.jobs.base import ReconcilerJob


class _CountingJob(ReconcilerJob):
    name = "counting"
    lock_name = "keymeter_test_counting"

    def __init__(self, engine, **kwargs) -> None:
        super().__init__(engine, **kwargs)
        self.runs = 0

    async def _execute(self, counts: dict[str, int]) -> None:
        self.runs += 1
        counts["runs"] = self.runs


class _FailingJob(_CountingJob):
    name = "failing"
    lock_name = "keymeter_test_failing"

    async def _execute(self, counts: dict[str, int]) -> None:
        counts["touched"] = 1
        raise RuntimeError("boom")


class _GatedJob(_CountingJob):
    """Blocks inside its run until ``gate`` is set, once ``gate`` exists."""

    name = "gated"
    lock_name = "keymeter_test_gated"

    def __init__(self, engine, **kwargs) -> None:
        super().__init__(engine, **kwargs)
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def _execute(self, counts: dict[str, int]) -> None:
        await super()._execute(counts)
        if self.gate is not None:
            self.entered.set()
            await self.gate.wait()


class _BacklogJob(_CountingJob):
    name = "backlog"
    lock_name = "keymeter_test_backlog"

    def __init__(self, engine, backlog: int, **kwargs) -> None:
        super().__init__(engine, **kwargs)
        self.backlog = backlog

    async def _execute(self, counts: dict[str, int]) -> None:
        async def _batch(session, batch_size: int) -> int:
            taken = min(self.backlog, batch_size)
            self.backlog -= taken
            return taken

        await self._drain(counts, "rows", _batch, 10)


async def _wait_for_first_result(job: ReconcilerJob) -> None:
    for _ in range(100):
        if job.last_result is not None:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("job never ran")


@pytest.mark.asyncio
async def test_busy_lock_skips_run(engine) -> None:
    job = _CountingJob(engine, interval_seconds=60)
    holder = NamedLock(engine, job.lock_name)
    assert await holder.try_acquire()

    result = await job.run_once()
    assert not result.lock_acquired
    assert result.skipped
    assert job.runs == 0

    await holder.release()
    assert (await job.run_once()).counts == {"runs": 1}


@pytest.mark.asyncio
async def test_error_is_recorded_and_lock_released(engine) -> None:
    job = _FailingJob(engine, interval_seconds=60)

    result = await job.run_once()
    assert result.lock_acquired
    assert result.error == "boom"
    assert result.counts == {"touched": 1}

    probe = NamedLock(engine, job.lock_name)
    assert await probe.try_acquire()
    await probe.release()


@pytest.mark.asyncio
async def test_start_runs_then_stop(engine) -> None:
    job = _CountingJob(engine, interval_seconds=3600, initial_delay_seconds=0)
    await job.start()
    assert job.running

    for _ in range(100):
        if job.last_result is not None:
            break
        await asyncio.sleep(0.01)

    await job.stop()
    assert not job.running
    assert job.stopping
    assert job.runs == 1


@pytest.mark.asyncio
async def test_stop_cancels_sleeping_schedule_during_manual_run(engine) -> None:
    job = _GatedJob(engine, interval_seconds=30)
    await job.start()
    await _wait_for_first_result(job)

    job.gate = asyncio.Event()
    manual = asyncio.create_task(job.run_once())
    await asyncio.wait_for(job.entered.wait(), timeout=1)

    await asyncio.wait_for(job.stop(), timeout=1)
    assert not job.running

    job.gate.set()
    result = await manual
    assert result.lock_acquired
    assert job.runs == 2


@pytest.mark.asyncio
async def test_cancelled_stop_propagates(engine) -> None:
    job = _GatedJob(engine, interval_seconds=30)
    job.gate = asyncio.Event()
    await job.start()
    await asyncio.wait_for(job.entered.wait(), timeout=1)

    stopping = asyncio.create_task(job.stop())
    await asyncio.sleep(0.01)
    stopping.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stopping


@pytest.mark.asyncio
async def test_run_once_after_stop_drains_backlog(engine) -> None:
    job = _BacklogJob(engine, backlog=25, interval_seconds=60)
    await job.stop()
    assert job.stopping

    result = await job.run_once()
    assert result.counts == {"rows": 25}
    assert job.backlog == 0
    assert not job.stopping


@pytest.mark.asyncio
async def test_disabled_job_is_not_scheduled(engine) -> None:
    job = _CountingJob(engine, interval_seconds=1, enabled=False)
    await job.start()
    assert not job.running
    await job.stop()
    assert job.runs == 0


@pytest.mark.asyncio
async def test_build_job_applies_overrides(engine, settings) -> None:
    job = build_job("expiry", engine, settings, batch_size=7, purge_enabled=None)
    assert isinstance(job, ExpiryWatcher)
    assert job._batch_size == 7
    assert job._purge_enabled is settings.expiry_purge_enabled
    assert not job.enabled


@pytest.mark.asyncio
async def test_build_job_rejects_unknown_name(engine, settings) -> None:
    with pytest.raises(ValueError, match="Unknown job 'nightly'"):
        build_job("nightly", engine, settings)


@pytest.mark.asyncio
async def test_build_jobs_covers_every_job(engine, settings) -> None:
    jobs = build_jobs(engine, settings)
    assert [type(job) for job in jobs] == [ExpiryWatcher, OrphanCleanup, RetentionCleanup]
    assert len({job.lock_name for job in jobs}) == 3
