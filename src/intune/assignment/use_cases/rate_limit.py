"""Rate-limit coordination shared by every batch of a run.

A single coordinator instance gates all outgoing batches. Any 429 pushes
the shared ``next_allowed_send_time`` forward and every later batch waits
for it, so one throttled item stalls the pipeline instead of provoking
more 429s. The deadline only ever moves forward.

Both operations run under one asyncio.Lock so concurrent batches read
and update the deadline one at a time.
"""

import asyncio
import logging
from typing import Any, Optional

from ...api.resilience import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 10.0


class RateLimitCoordinator:
    """Tracks when the next batch may be sent."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        default_retry_after: float = DEFAULT_RETRY_AFTER_SECONDS,
    ):
        self._clock = clock or SystemClock()
        self.default_retry_after = default_retry_after
        self._next_allowed_send_time = self._clock.monotonic()
        self._last_retry_after: Optional[float] = None
        self._rate_limit_count = 0
        self._consecutive_rate_limits = 0
        self._total_wait_time = 0.0
        self._lock = asyncio.Lock()

    @property
    def next_allowed_send_time(self) -> float:
        return self._next_allowed_send_time

    @property
    def last_retry_after(self) -> Optional[float]:
        return self._last_retry_after

    @property
    def rate_limit_count(self) -> int:
        """Number of 429 responses observed."""
        return self._rate_limit_count

    @property
    def total_wait_time(self) -> float:
        """Total wait handed out by before_send (seconds)."""
        return self._total_wait_time

    async def before_send(self) -> float:
        """Seconds to wait before the next batch may be sent (0 if none)."""
        async with self._lock:
            wait = max(0.0, self._next_allowed_send_time - self._clock.monotonic())
            if wait > 0:
                self._total_wait_time += wait
                logger.info(f"Rate limiter: waiting {wait:.1f}s before next send")
            return wait

    async def on_response(
        self,
        retry_after_seconds: Optional[float] = None,
        rate_limited: bool = True,
    ) -> None:
        """Record the outcome of a send.

        For a 429 the deadline becomes
        ``now + max(remaining, retry_after or default)``. Any other
        response leaves the deadline untouched.
        """
        async with self._lock:
            if not rate_limited:
                self._consecutive_rate_limits = 0
                return

            now = self._clock.monotonic()
            delay = (
                retry_after_seconds
                if retry_after_seconds is not None
                else self.default_retry_after
            )
            remaining = max(0.0, self._next_allowed_send_time - now)
            candidate = now + max(remaining, delay)
            self._next_allowed_send_time = max(self._next_allowed_send_time, candidate)

            self._last_retry_after = delay
            self._rate_limit_count += 1
            self._consecutive_rate_limits += 1
            logger.warning(
                f"Rate limited (429 #{self._consecutive_rate_limits} in a row), "
                f"retry after {delay:.1f}s"
            )

    def get_status(self) -> dict[str, Any]:
        return {
            "wait_seconds": max(0.0, self._next_allowed_send_time - self._clock.monotonic()),
            "last_retry_after": self._last_retry_after,
            "rate_limit_count": self._rate_limit_count,
            "consecutive_rate_limits": self._consecutive_rate_limits,
            "total_wait_time": self._total_wait_time,
        }
