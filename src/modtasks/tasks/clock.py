"""
Wall-clock and timer abstraction used by the task subsystem.

Everything that reads "now" or arms a deadline goes through a :class:`Clock`
so that scheduling can run on real asyncio timers in production and on
virtual time in tests:

- :class:`SystemClock` arms each timer as an asyncio task that sleeps until
  the deadline and then awaits the callback.
- :class:`ManualClock` keeps timers in a min-heap and only fires them when
  :meth:`ManualClock.advance` moves virtual time past their deadline, which
  makes fire-versus-cancel races deterministic.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from modtasks.util.logger import get_logger

logger = get_logger("clock")

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle(ABC):
    """Handle returned by :meth:`Clock.call_later`."""

    @abstractmethod
    def cancel(self) -> None:
        """Disarm the timer. Cancelling a fired or cancelled timer is a no-op."""

    @property
    @abstractmethod
    def cancelled(self) -> bool: ...


class Clock(ABC):
    """Source of the current time and of one-shot timers."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""

    @abstractmethod
    def call_later(self, delay_seconds: float, callback: TimerCallback) -> TimerHandle:
        """Await ``callback()`` once ``delay_seconds`` have elapsed."""


# -------------------- asyncio implementation --------------------

class AsyncioTimer(TimerHandle):
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if not self._task.done():
            self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class SystemClock(Clock):
    """Real time backed by the running asyncio event loop."""

    def __init__(self) -> None:
        # Strong references so pending timer tasks are not garbage collected
        self._tasks: set[asyncio.Task[None]] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay_seconds: float, callback: TimerCallback) -> TimerHandle:
        async def _fire() -> None:
            if delay_seconds > 0:
                await asyncio.sleep(delay_seconds)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[CLOCK] Timer callback raised")

        loop = asyncio.get_running_loop()
        task = loop.create_task(_fire(), name="modtasks-timer")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return AsyncioTimer(task)

    async def shutdown(self) -> None:
        """Cancel every outstanding timer and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


# -------------------- virtual time --------------------

class ManualTimer(TimerHandle):
    def __init__(self, deadline: datetime, callback: TimerCallback) -> None:
        self.deadline = deadline
        self.callback = callback
        self._cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualClock(Clock):
    """Virtual clock: time only moves when :meth:`advance` is awaited.

    Timers are fired in deadline order (ties in arming order) and the clock
    reads exactly the deadline while a callback runs, so a callback that arms
    a follow-up timer sees a consistent "now".
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._heap: list[tuple[datetime, int, ManualTimer]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay_seconds: float, callback: TimerCallback) -> TimerHandle:
        deadline = self._now + timedelta(seconds=max(delay_seconds, 0.0))
        timer = ManualTimer(deadline, callback)
        heapq.heappush(self._heap, (deadline, next(self._counter), timer))
        return timer

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, timer in self._heap if not timer.cancelled and not timer.fired)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer whose deadline is reached."""
        target = self._now + timedelta(seconds=seconds)
        while self._heap and self._heap[0][0] <= target:
            deadline, _, timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self._now = max(self._now, deadline)
            timer.fired = True
            await timer.callback()
        self._now = target

    def set(self, when: datetime) -> None:
        """Jump to ``when`` without firing timers (used to age records)."""
        self._now = when
