"""
Scoped rate limiter.

Each HTTP client owns one RateLimiter. When a remote API answers 429 or
sends ``retry-after``/``ratelimit-reset`` headers the client defers the
limiter; every call waits until the deferral has passed. Nothing is shared
between client instances.
"""

import logging
import threading
import time
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Tracks the earliest time the next call may be made.

    Args:
        clock: Monotonic clock (seconds)
        sleep: Sleep function, injectable for tests
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], Any] = time.sleep):
        self._clock = clock
        self._sleep = sleep
        self._next_allowed = 0.0
        self._lock = threading.Lock()

    @property
    def next_allowed(self) -> float:
        return self._next_allowed

    def delay_remaining(self) -> float:
        with self._lock:
            return max(0.0, self._next_allowed - self._clock())

    def wait(self) -> float:
        """Block until calls are allowed. Returns the seconds waited."""
        remaining = self.delay_remaining()
        if remaining > 0:
            logger.debug(f"Rate limited, waiting {remaining:.1f}s")
            self._sleep(remaining)
        return remaining

    def defer(self, seconds: float) -> None:
        """Push the next allowed call at least ``seconds`` into the future."""
        if seconds <= 0:
            return
        with self._lock:
            self._next_allowed = max(self._next_allowed, self._clock() + seconds)

    def defer_from_headers(self, headers: Mapping[str, str]) -> Optional[float]:
        """Apply ``ratelimit-reset`` or ``retry-after`` (seconds) if present."""
        value = headers.get("ratelimit-reset") or headers.get("retry-after")
        if not value:
            return None
        try:
            seconds = float(value)
        except ValueError:
            logger.debug(f"Ignoring non-numeric rate limit header: {value}")
            return None
        self.defer(seconds)
        return seconds

    def reset(self) -> None:
        with self._lock:
            self._next_allowed = 0.0
