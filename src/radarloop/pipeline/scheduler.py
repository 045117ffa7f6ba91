"""
Scheduler
=========

Delayed-callback abstraction used for retry timers, the periodic update
check and the animation driver.

Implementations:
    - AsyncioScheduler: event loop timers and the wall clock
    - ManualScheduler: logical clock advanced explicitly (tests, replays)

Design Rules:
    - Callbacks run on the thread that owns the pipeline (the event loop
      thread, or the caller of ManualScheduler.advance)
    - A cancelled handle never fires
"""

import asyncio
import heapq
import itertools
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from radarloop.timeline.radar_time import as_utc, utc_now


logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """Cancellable pending callback (asyncio.TimerHandle satisfies this)."""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Clock plus one-shot delayed callbacks."""

    def now(self) -> datetime: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Scheduler backed by the running event loop."""

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._loop = loop
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)


class ManualTimer:
    """Timer handle of ManualScheduler."""

    __slots__ = ("due", "callback", "_cancelled")

    def __init__(self, due: datetime, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """
    Scheduler with a logical clock.

    Nothing fires until advance() moves the clock past a timer's due time.

    Example:
        scheduler = ManualScheduler(datetime(2025, 9, 15, 12, 2, tzinfo=timezone.utc))
        scheduler.call_later(5, retry)
        scheduler.advance(5)   # retry() runs here
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = as_utc(start) if start is not None else utc_now()
        self._queue: List[Tuple[datetime, int, ManualTimer]] = []
        self._sequence = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self._now + timedelta(seconds=max(0.0, delay)), callback)
        heapq.heappush(self._queue, (timer.due, next(self._sequence), timer))
        return timer

    @property
    def pending(self) -> int:
        """Number of timers that have not fired and are not cancelled."""
        return sum(1 for _, _, timer in self._queue if not timer.cancelled())

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, firing due timers in due order.

        Timers scheduled by callbacks fire in the same call when they fall
        within the advanced window.

        Returns:
            Number of callbacks fired
        """
        target = self._now + timedelta(seconds=seconds)
        fired = 0

        while self._queue and self._queue[0][0] <= target:
            due, _, timer = heapq.heappop(self._queue)
            if timer.cancelled():
                continue
            self._now = due
            timer.callback()
            fired += 1

        self._now = target
        return fired
