"""Tests for database-granted named locks on the SQLite backend."""

from __future__ import annotations

import asyncio

import pytest
from meter_core.state.database import get_session
from meter_core.state.locks import NamedLock
from meter_core.state.repository import JobLockRepository


@pytest.mark.asyncio
async def test_only_one_concurrent_holder(file_engine) -> None:
    locks = [NamedLock(file_engine, "keymeter_test_job") for _ in range(5)]

    results = await asyncio.gather(*(lock.try_acquire() for lock in locks))

    assert sum(results) == 1
    assert [lock.held for lock in locks] == results

    for lock in locks:
        await lock.release()


@pytest.mark.asyncio
async def test_release_allows_reacquire(file_engine) -> None:
    first = NamedLock(file_engine, "keymeter_test_job")
    second = NamedLock(file_engine, "keymeter_test_job")

    assert await first.try_acquire()
    assert not await second.try_acquire()

    await first.release()
    assert not first.held
    assert await second.try_acquire()
    await second.release()


@pytest.mark.asyncio
async def test_distinct_names_do_not_contend(engine) -> None:
    a = NamedLock(engine, "keymeter_a")
    b = NamedLock(engine, "keymeter_b")
    assert await a.try_acquire()
    assert await b.try_acquire()
    await a.release()
    await b.release()


@pytest.mark.asyncio
async def test_context_manager_releases(engine) -> None:
    async with NamedLock(engine, "keymeter_ctx") as acquired:
        assert acquired
        async with get_session(engine) as session:
            assert await JobLockRepository(session).holder_of("keymeter_ctx") is not None

    async with get_session(engine) as session:
        assert await JobLockRepository(session).holder_of("keymeter_ctx") is None


@pytest.mark.asyncio
async def test_release_when_not_held_is_noop(engine) -> None:
    lock = NamedLock(engine, "keymeter_idle")
    await lock.release()
    assert not lock.held
