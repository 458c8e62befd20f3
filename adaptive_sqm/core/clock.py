"""Injectable clocks.

Everything that waits or reads the time goes through a ``Clock`` so the
scheduler, retry backoff and cooldown windows can be driven by tests
without real sleeps.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock in UTC backed by asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class ManualClock:
    """Clock that only moves when ``advance`` is called.

    Sleepers are woken in deadline order and the clock reads the sleeper's
    deadline while it runs, so a periodic job sees the same timestamps it
    would see in production.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._sleepers: list[tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self._now

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, fut in self._sleepers if not fut.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        entry = (self._now + timedelta(seconds=seconds), fut)
        self._sleepers.append(entry)
        try:
            await fut
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    async def advance(self, seconds: float) -> None:
        """Move time forward, running every sleeper that falls due."""
        target = self._now + timedelta(seconds=seconds)
        while True:
            due = [s for s in self._sleepers if s[0] <= target and not s[1].done()]
            if not due:
                break
            entry = min(due, key=lambda s: s[0])
            self._now = max(self._now, entry[0])
            self._sleepers.remove(entry)
            entry[1].set_result(None)
            await _drain()
        self._now = target
        await _drain()


async def _drain(rounds: int = 25) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
