"""Shared request-rate limiter for one Slack credential."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Final

from slack_mirror.config.logging_config import get_logger

logger = get_logger(__name__)

ClockCallable = Callable[[], float]
SleepCallable = Callable[[float], None]

_SLOW_WAIT_LOG_THRESHOLD_SECONDS: Final[float] = 5.0


class RateLimiter:
    """Grant permits no closer together than ``interval_seconds``, globally.

    All callers share one "next eligible time". Each ``acquire`` reserves the
    next slot under the lock, then sleeps outside the lock, so the rate of
    outgoing calls is serialized while the calls themselves are not.
    Ordering between waiters is roughly arrival order.
    """

    def __init__(
        self,
        interval_seconds: float,
        *,
        clock: ClockCallable | None = None,
        sleep: SleepCallable | None = None,
    ) -> None:
        if interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")
        self._interval = interval_seconds
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._next_eligible: float | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def acquire(self) -> float:
        """Block until a permit is available.

        Returns:
            Clock time at which the permit was granted
        """
        with self._lock:
            now = self._clock()
            if self._next_eligible is None or self._next_eligible <= now:
                granted_at = now
            else:
                granted_at = self._next_eligible
            self._next_eligible = granted_at + self._interval

        wait_seconds = granted_at - now
        if wait_seconds > 0:
            if wait_seconds >= _SLOW_WAIT_LOG_THRESHOLD_SECONDS:
                logger.debug("rate_limiter_queue_deep", wait_seconds=wait_seconds)
            self._sleep(wait_seconds)
        return granted_at


__all__ = ["RateLimiter"]
