# chatrelay/core/circuit_breaker.py

"""
Circuit breaker for the dependencies a queued message touches.

One instance guards one dependency (chat API, AI backend, database). All
call sites for a dependency must share the instance held by the
application container, otherwise the failure count means nothing.
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from chatrelay.core.scheduler import AsyncioScheduler, Clock, ScheduledTask, SystemClock, TaskScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")

WHATSAPP_API = "whatsappApi"
AI_PROCESSING = "aiProcessing"
DATABASE = "database"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"  # calls pass through
    OPEN = "OPEN"  # calls rejected
    HALF_OPEN = "HALF_OPEN"  # one trial call allowed


class CircuitOpenError(Exception):
    """Raised instead of calling the dependency while the circuit is open"""

    def __init__(self, name: str, retry_in: Optional[float] = None):
        self.name = name
        self.retry_in = retry_in
        message = f"Circuit breaker '{name}' is OPEN"
        if retry_in is not None:
            message += f", next attempt in {retry_in:.1f}s"
        super().__init__(message)


class CircuitBreaker:
    """
    CLOSED -> OPEN after ``threshold`` consecutive failures. While OPEN,
    calls fail fast until ``timeout`` has passed since the last failure, or
    until the ``reset_timeout`` timer flips the breaker to HALF_OPEN. In
    HALF_OPEN a single trial call decides: success closes, failure reopens
    and restarts the timer.

    The wrapped error is always re-raised after it is recorded.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        timeout: float = 60.0,
        reset_timeout: float = 30.0,
        clock: Optional[Clock] = None,
        scheduler: Optional[TaskScheduler] = None,
    ):
        self.name = name
        self.threshold = threshold
        self.timeout = timeout
        self.reset_timeout = reset_timeout
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or AsyncioScheduler(self.clock)

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._reset_task: Optional[ScheduledTask] = None
        # Bumped on every transition; a timer from an older generation is stale
        self._generation = 0

        self._total_calls = 0
        self._successful_calls = 0
        self._failed_calls = 0
        self._rejected_calls = 0
        self._times_opened = 0

        logger.info(
            f"CircuitBreaker '{name}' initialized - threshold: {threshold}, "
            f"timeout: {timeout}s, reset timeout: {reset_timeout}s"
        )

    def get_state(self) -> str:
        return self._state.value

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        self._generation += 1
        if new_state == CircuitState.OPEN:
            self._times_opened += 1
        if new_state != CircuitState.HALF_OPEN:
            self._trial_in_flight = False
        logger.warning(
            f"CircuitBreaker '{self.name}' state change: {old_state.value} -> {new_state.value} ({reason})"
        )

    def _cancel_reset_timer(self) -> None:
        if self._reset_task is not None:
            self._reset_task.cancel()
            self._reset_task = None

    def _schedule_half_open(self) -> None:
        self._cancel_reset_timer()
        generation = self._generation

        def _flip():
            if generation != self._generation or self._state != CircuitState.OPEN:
                logger.debug(f"CircuitBreaker '{self.name}' ignoring superseded reset timer")
                return
            self._reset_task = None
            self._transition(CircuitState.HALF_OPEN, "reset timeout elapsed")

        self._reset_task = self.scheduler.call_later(self.reset_timeout, _flip)

    def _open(self, reason: str) -> None:
        self._transition(CircuitState.OPEN, reason)
        self._schedule_half_open()

    def _before_call(self) -> None:
        if self._state == CircuitState.OPEN:
            elapsed = self.clock.now() - (self._last_failure_time or 0.0)
            if elapsed > self.timeout:
                self._cancel_reset_timer()
                self._transition(CircuitState.HALF_OPEN, "timeout elapsed, probing")
            else:
                self._rejected_calls += 1
                raise CircuitOpenError(self.name, self.timeout - elapsed)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._rejected_calls += 1
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

    def record_success(self) -> None:
        self._total_calls += 1
        self._successful_calls += 1
        self._failure_count = 0
        if self._state != CircuitState.CLOSED:
            self._cancel_reset_timer()
            self._transition(CircuitState.CLOSED, "trial call succeeded")

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        self._total_calls += 1
        self._failed_calls += 1
        self._failure_count += 1
        self._last_failure_time = self.clock.now()

        error_name = type(error).__name__ if error is not None else "Unknown"
        logger.warning(
            f"CircuitBreaker '{self.name}' recorded failure #{self._failure_count}: {error_name}"
        )

        if self._state == CircuitState.HALF_OPEN:
            self._open(f"trial call failed: {error_name}")
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.threshold:
            self._open(f"failure threshold reached: {self._failure_count}")

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker."""
        self._before_call()
        try:
            result = await fn()
        except BaseException as e:
            # Cancellation and timeouts count as failures too, or a
            # HALF_OPEN trial would never settle
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker closed"""
        logger.info(f"Manually resetting CircuitBreaker '{self.name}'")
        self._cancel_reset_timer()
        self._failure_count = 0
        self._last_failure_time = None
        self._transition(CircuitState.CLOSED, "manual reset")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failureCount": self._failure_count,
            "lastFailureTime": self._last_failure_time,
            "threshold": self.threshold,
            "timeout": self.timeout,
            "resetTimeout": self.reset_timeout,
            "totalCalls": self._total_calls,
            "successfulCalls": self._successful_calls,
            "failedCalls": self._failed_calls,
            "rejectedCalls": self._rejected_calls,
            "timesOpened": self._times_opened,
        }


def build_circuit_breakers(settings, clock: Optional[Clock] = None, scheduler: Optional[TaskScheduler] = None):
    """The three process-wide breakers, keyed by dependency name."""
    clock = clock or SystemClock()
    scheduler = scheduler or AsyncioScheduler(clock)
    tuning = {
        WHATSAPP_API: settings.WHATSAPP_API_BREAKER,
        AI_PROCESSING: settings.AI_PROCESSING_BREAKER,
        DATABASE: settings.DATABASE_BREAKER,
    }
    return {
        name: CircuitBreaker(
            name,
            threshold=conf.threshold,
            timeout=conf.timeout,
            reset_timeout=conf.reset_timeout,
            clock=clock,
            scheduler=scheduler,
        )
        for name, conf in tuning.items()
    }
