#!/usr/bin/env python3
"""Resilience Patterns for the Intune Graph client.

This module holds the waiting and failure-isolation primitives shared by
the Graph client and the bulk assignment engine:
    - Cancellation token checked between batches and inside waits
    - Clock abstraction with a cancellable sleep(duration, token)
    - Exponential backoff delay calculation
    - Circuit breaker

Every wait in the engine goes through ``Clock.sleep`` so the logic can be
driven by a fake clock in tests instead of wall-clock delays.

Example:
    token = CancellationToken()
    clock = SystemClock()
    await clock.sleep(10, token)   # returns early with an error if cancelled

    circuit = CircuitBreaker(failure_threshold=5, timeout=60)
    result = await circuit.call(fetch_data)
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import CircuitOpenError, OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Cancellation
# ============================================

class CancellationToken:
    """Cooperative cancellation flag.

    Cancelling never interrupts an HTTP call that is already in flight; it
    only wakes sleepers and is checked before new work is started.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        if not self._event.is_set():
            logger.info(f"Cancellation requested: {reason}")
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise OperationCancelledError(self.reason or "Operation cancelled")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()


# ============================================
# Clock
# ============================================

class Clock(ABC):
    """Time source and wait primitive used by the engine."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a monotonic timeline (for deadlines)."""
        pass

    @abstractmethod
    def now(self) -> datetime:
        """Current wall-clock time in UTC (for timestamps)."""
        pass

    @abstractmethod
    async def sleep(
        self,
        seconds: float,
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Wait for ``seconds``, aborting promptly if ``token`` is cancelled.

        Raises:
            OperationCancelledError: If the token is (or becomes) cancelled
        """
        pass


class SystemClock(Clock):
    """Clock backed by the event loop and the system time."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(
        self,
        seconds: float,
        token: Optional[CancellationToken] = None,
    ) -> None:
        if token is None:
            await asyncio.sleep(max(0.0, seconds))
            return

        token.raise_if_cancelled()
        if seconds <= 0:
            return

        try:
            await asyncio.wait_for(token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        # The token fired before the timeout elapsed
        token.raise_if_cancelled()


async def sleep(
    seconds: float,
    token: Optional[CancellationToken] = None,
    clock: Optional[Clock] = None,
) -> None:
    """Cancellable sleep on the given clock (system clock by default)."""
    await (clock or SystemClock()).sleep(seconds, token)


# ============================================
# Backoff
# ============================================

def backoff_delay(attempt: int, base: float = 2.0, max_delay: Optional[float] = None) -> float:
    """Delay before retry number ``attempt`` (1-based): ``base ** attempt``.

    >>> [backoff_delay(n) for n in (1, 2, 3)]
    [2.0, 4.0, 8.0]
    """
    if attempt < 1:
        return 0.0
    delay = float(base ** attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


# ============================================
# Circuit Breaker
# ============================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests rejected immediately
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker guarding the Graph endpoint.

    State Transitions:
        CLOSED -> OPEN: When failure_count >= failure_threshold
        OPEN -> HALF_OPEN: When timeout expires
        HALF_OPEN -> CLOSED: When success_threshold test requests succeed
        HALF_OPEN -> OPEN: When a test request fails

    Only exceptions listed in ``trip_on`` count as failures; a 403 for one
    bad request should not stop everyone else's traffic.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 2,
        name: str = "default",
        trip_on: tuple[type[BaseException], ...] = (Exception,),
        clock: Optional[Clock] = None,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.name = name
        self.trip_on = trip_on
        self._clock = clock or SystemClock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _should_attempt(self) -> bool:
        if self._state != CircuitState.OPEN:
            return True
        if self._opened_at is None:
            return False
        return self._clock.monotonic() - self._opened_at >= self.timeout

    async def acquire(self) -> None:
        """Admit one call, moving OPEN -> HALF_OPEN once the timeout has passed.

        Raises:
            CircuitOpenError: If circuit is open and timeout hasn't passed
        """
        async with self._lock:
            if not self._should_attempt():
                reset_at = None
                if self._last_failure_time:
                    reset_at = self._last_failure_time + timedelta(seconds=self.timeout)
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    reset_at=reset_at,
                    failure_count=self._failure_count,
                )

            if self._state == CircuitState.OPEN:
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        **kwargs,
    ) -> T:
        """Execute ``func`` through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit rejects the call
            Any exception from func (after updating circuit state)
        """
        await self.acquire()
        try:
            result = await func(*args, **kwargs)
        except self.trip_on as e:
            await self._on_failure(e)
            raise
        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    logger.info(
                        f"Circuit '{self.name}' closing after "
                        f"{self._success_count} successes"
                    )
                    self._state = CircuitState.CLOSED
                    self._success_count = 0

    async def _on_failure(self, exception: BaseException):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock.now()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' reopening after test failure: {exception}"
                )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock.monotonic()

            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    logger.warning(
                        f"Circuit '{self.name}' opening after "
                        f"{self._failure_count} failures"
                    )
                    self._state = CircuitState.OPEN
                    self._opened_at = self._clock.monotonic()

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._last_failure_time = None
        logger.info(f"Circuit '{self.name}' manually reset")

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout,
            "last_failure_at": (
                self._last_failure_time.isoformat()
                if self._last_failure_time
                else None
            ),
        }
