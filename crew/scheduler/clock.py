# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - CLOCKS
# =============================================================================
"""
Clocks

Time sources for schedule triggers and the health monitor loop.

    - SystemClock: wall-clock time, real asyncio sleeps
    - ManualClock: virtual time that only moves when advance() is called,
      used to fast-forward cron schedules (hours of schedule in
      milliseconds of real time)

Both clocks return timezone-aware datetimes.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional, Tuple


# =============================================================================
# CLOCK INTERFACE
# =============================================================================


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time (timezone-aware)."""
        pass

    @abstractmethod
    async def sleep_until(self, when: datetime) -> None:
        """Suspend until the clock reaches *when*."""
        pass

    async def sleep(self, seconds: float) -> None:
        """Suspend for *seconds* of clock time."""
        await self.sleep_until(self.now() + timedelta(seconds=seconds))

    def timestamp(self) -> float:
        """Current time as epoch seconds."""
        return self.now().timestamp()


# =============================================================================
# SYSTEM CLOCK
# =============================================================================


class SystemClock(Clock):
    """
    Wall-clock time.

    Long sleeps are split into chunks of at most max_sleep seconds and
    re-checked against the wall clock, so a suspended laptop or an NTP
    step does not make a trigger fire hours late.
    """

    def __init__(self, tz: Optional[tzinfo] = None, max_sleep: float = 60.0):
        self.tz = tz or timezone.utc
        self.max_sleep = max_sleep

    def now(self) -> datetime:
        return datetime.now(self.tz)

    async def sleep_until(self, when: datetime) -> None:
        while True:
            remaining = (when - self.now()).total_seconds()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, self.max_sleep))


# =============================================================================
# MANUAL CLOCK
# =============================================================================


class ManualClock(Clock):
    """
    Virtual clock driven by advance().

    Sleepers are woken in chronological order; after each wake-up the
    event loop is given a few turns so the woken coroutine can run and
    register its next sleep before time moves on.

    Usage::

        clock = ManualClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        trigger = ScheduleTrigger("*/1 * * * *", on_fire, clock=clock)
        trigger.start()
        await clock.advance(180)   # three fires
    """

    def __init__(self, start: Optional[datetime] = None, settle_rounds: int = 5):
        start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._sleepers: List[Tuple[datetime, int, asyncio.Future]] = []
        self._seq = itertools.count()
        self.settle_rounds = settle_rounds

    def now(self) -> datetime:
        return self._now

    async def sleep_until(self, when: datetime) -> None:
        if when <= self._now:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (when, next(self._seq), future))
        await future

    async def advance(self, seconds: float) -> None:
        """Move time forward by *seconds*, waking every due sleeper in order."""
        target = self._now + timedelta(seconds=seconds)
        while self._sleepers and self._sleepers[0][0] <= target:
            when, _, future = heapq.heappop(self._sleepers)
            if when > self._now:
                self._now = when
            if not future.done():
                future.set_result(None)
            await self._settle()
        self._now = target
        await self._settle()

    @property
    def pending_sleepers(self) -> int:
        """Number of coroutines currently sleeping on this clock."""
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def _settle(self) -> None:
        for _ in range(self.settle_rounds):
            await asyncio.sleep(0)


__all__ = [
    "Clock",
    "SystemClock",
    "ManualClock",
]
