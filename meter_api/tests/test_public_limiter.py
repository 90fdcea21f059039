"""Tests for the public tier's per-IP daily limits."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from meter_api.errors import DailyLimitReached
from meter_api.services.public_limiter import MemoryCounterStore, PublicDailyLimiter


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock(datetime(2024, 3, 10, 23, 0, tzinfo=UTC))


@pytest.mark.asyncio
async def test_counts_down_then_rejects(clock) -> None:
    limiter = PublicDailyLimiter({"h2i": 3}, clock=clock)
    assert await limiter.hit("198.51.100.1", "h2i") == 2
    assert await limiter.hit("198.51.100.1", "h2i") == 1
    assert await limiter.hit("198.51.100.1", "h2i") == 0

    with pytest.raises(DailyLimitReached) as excinfo:
        await limiter.hit("198.51.100.1", "h2i")
    assert excinfo.value.status_code == 429
    assert excinfo.value.details == {"endpoint": "h2i", "limit": 3}


@pytest.mark.asyncio
async def test_rejected_hit_is_not_counted(clock) -> None:
    limiter = PublicDailyLimiter({"image": 5}, clock=clock)
    await limiter.hit("198.51.100.1", "image", incoming=4)
    with pytest.raises(DailyLimitReached):
        await limiter.hit("198.51.100.1", "image", incoming=2)
    assert await limiter.remaining("198.51.100.1", "image") == 1


@pytest.mark.asyncio
async def test_ips_and_endpoints_are_independent(clock) -> None:
    limiter = PublicDailyLimiter({"pdf": 1, "image": 1}, clock=clock)
    await limiter.hit("198.51.100.1", "pdf")
    assert await limiter.hit("198.51.100.2", "pdf") == 0
    assert await limiter.hit("198.51.100.1", "image") == 0


@pytest.mark.asyncio
async def test_unlisted_endpoint_unlimited(clock) -> None:
    limiter = PublicDailyLimiter({"pdf": 1}, clock=clock)
    assert await limiter.hit("198.51.100.1", "tools") is None
    assert await limiter.remaining("198.51.100.1", "tools") is None


@pytest.mark.asyncio
async def test_new_utc_day_resets_and_purges(clock) -> None:
    store = MemoryCounterStore()
    limiter = PublicDailyLimiter({"pdf": 1}, store=store, clock=clock)
    await limiter.hit("198.51.100.1", "pdf")
    with pytest.raises(DailyLimitReached):
        await limiter.hit("198.51.100.1", "pdf")

    clock.now += timedelta(hours=2)
    assert await limiter.hit("198.51.100.1", "pdf") == 0
    assert await store.get("2024-03-10|pdf|198.51.100.1") == 0
    assert await store.get("2024-03-11|pdf|198.51.100.1") == 1
