"""Sliding-window limiter for outbound market-data calls."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Deque, Optional

WAIT_BUFFER_SECONDS = 0.1


class SlidingWindowRateLimiter:
    """Allow at most ``max_calls`` calls in any rolling ``window_seconds`` window.

    ``acquire`` blocks until a slot frees up instead of rejecting the call. The
    process is single-threaded, so callers are served in arrival order.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_calls = max_calls
        self._window = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._log = logger or logging.getLogger(__name__)

    @property
    def max_calls(self) -> int:
        return self._max_calls

    def _evict(self, now: float) -> None:
        while self._calls and self._calls[0] <= now - self._window:
            self._calls.popleft()

    def calls_in_window(self) -> int:
        self._evict(self._clock())
        return len(self._calls)

    def acquire(self) -> float:
        """Block until a call may proceed, record it, and return the seconds waited."""
        waited = 0.0
        while True:
            now = self._clock()
            self._evict(now)
            if len(self._calls) < self._max_calls:
                self._calls.append(now)
                return waited
            wait_for = self._calls[0] + self._window - now + WAIT_BUFFER_SECONDS
            self._log.info("Rate limit reached, waiting %.1fs", wait_for)
            self._sleep(wait_for)
            waited += wait_for
