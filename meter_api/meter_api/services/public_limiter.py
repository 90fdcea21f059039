"""Per-IP daily request limits for the public tier.

Counters are keyed by ``(UTC day, endpoint, ip)`` and kept behind a
:class:`CounterStore`, with the current time supplied by an injected clock.

.. warning:: **Best-effort admission control**

   The default :class:`MemoryCounterStore` lives in process memory.  It
   resets on restart and every replica counts independently, so a client
   spreading requests across *N* replicas gets *N x* the daily budget.
   This is acceptable for the anonymous public tier, which is a demo
   allowance rather than a billed quota.  A deployment that needs
   cross-instance accuracy provides a store backed by shared storage.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Protocol

from meter_api.errors import DailyLimitReached

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    async def get(self, key: str) -> int: ...

    async def add(self, key: str, amount: int) -> int: ...

    async def purge_except(self, day: str) -> None: ...


class MemoryCounterStore:
    """Process-local counter store."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> int:
        return self._counts.get(key, 0)

    async def add(self, key: str, amount: int) -> int:
        async with self._lock:
            value = self._counts.get(key, 0) + amount
            self._counts[key] = value
            return value

    async def purge_except(self, day: str) -> None:
        """Drop counters of every day other than *day*."""
        async with self._lock:
            stale = [k for k in self._counts if not k.startswith(f"{day}|")]
            for k in stale:
                del self._counts[k]


class PublicDailyLimiter:
    """Enforce per-IP, per-endpoint daily limits.

    Parameters
    ----------
    limits:
        Daily budget per endpoint.  Endpoints not listed are unlimited.
    store:
        Counter backend; defaults to :class:`MemoryCounterStore`.
    clock:
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        limits: Mapping[str, int],
        store: CounterStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._limits = dict(limits)
        self._store: CounterStore = store or MemoryCounterStore()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._current_day: str | None = None

    def _day(self) -> str:
        return self._clock().astimezone(UTC).strftime("%Y-%m-%d")

    @staticmethod
    def _key(day: str, endpoint: str, ip: str) -> str:
        return f"{day}|{endpoint}|{ip}"

    async def _roll_day(self, day: str) -> None:
        if day != self._current_day:
            await self._store.purge_except(day)
            self._current_day = day

    async def remaining(self, ip: str, endpoint: str) -> int | None:
        limit = self._limits.get(endpoint)
        if limit is None:
            return None
        day = self._day()
        used = await self._store.get(self._key(day, endpoint, ip))
        return max(limit - used, 0)

    async def hit(self, ip: str, endpoint: str, incoming: int = 1) -> int | None:
        """Count *incoming* units for *ip*; return what remains today.

        Raises
        ------
        DailyLimitReached
            If the units would exceed the endpoint's daily budget.  Nothing
            is counted in that case.
        """
        limit = self._limits.get(endpoint)
        if limit is None:
            return None
        day = self._day()
        await self._roll_day(day)
        key = self._key(day, endpoint, ip)
        used = await self._store.get(key)
        if used + incoming > limit:
            logger.info("Public daily limit reached ip=%s endpoint=%s used=%d limit=%d", ip, endpoint, used, limit)
            raise DailyLimitReached(endpoint=endpoint, limit=limit)
        total = await self._store.add(key, incoming)
        return max(limit - total, 0)
