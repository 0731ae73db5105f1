# chatrelay/core/scheduler.py

"""Time sources and deferred callbacks.

Everything that depends on elapsed time (circuit breakers, caches, queue
backoff) takes a clock and, where it needs one, a scheduler. Production
code uses the monotonic/asyncio versions; tests use ``ManualClock`` and
``ManualScheduler`` and move time forward explicitly.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> float:
        """Seconds, monotonic within the process."""
        ...

    def utcnow(self) -> datetime:
        """Wall-clock time as a naive UTC datetime."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0, start_utc: Optional[datetime] = None):
        self._now = start
        self._start_utc = start_utc or datetime(2025, 1, 1, 12, 0, 0)
        self._start = start
        self._listeners: List[Callable[[], None]] = []

    def now(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        return self._start_utc + timedelta(seconds=self._now - self._start)

    def advance(self, seconds: float) -> None:
        self._now += seconds
        for listener in list(self._listeners):
            listener()

    def subscribe(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)


class ScheduledTask:
    """Handle for a deferred callback."""

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self._handle = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class TaskScheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        ...


class AsyncioScheduler:
    """Schedules on the running event loop.

    Outside a running loop the task is returned unarmed; callers that need
    the transition anyway (the circuit breaker) also check elapsed time
    lazily on the next call.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(self.clock.now() + delay, callback)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, deferred callback left to lazy checks")
            return task

        def _fire():
            if not task.cancelled:
                task.callback()

        task._handle = loop.call_later(delay, _fire)
        return task


class ManualScheduler:
    """Fires due callbacks whenever its ManualClock advances."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self._tasks: List[ScheduledTask] = []
        clock.subscribe(self.run_due)

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(self.clock.now() + delay, callback)
        self._tasks.append(task)
        return task

    @property
    def pending(self) -> List[ScheduledTask]:
        return [t for t in self._tasks if not t.cancelled]

    def run_due(self) -> None:
        now = self.clock.now()
        due = sorted(
            (t for t in self._tasks if not t.cancelled and t.when <= now),
            key=lambda t: t.when,
        )
        self._tasks = [t for t in self._tasks if not t.cancelled and t.when > now]
        for task in due:
            task.callback()
