"""Fixed-window rate limiter for operator actions."""

import threading
import time
from typing import Callable


class FixedWindowLimiter:
    """At most *limit* acquisitions per *window_s* seconds window."""

    def __init__(self, limit: int, window_s: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._window_start = clock()
        self._count = 0
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        """Take one token. Returns False if the current window is exhausted."""
        with self._lock:
            now = self._clock()
            if now - self._window_start >= self.window_s:
                self._window_start = now
                self._count = 0
            if self._count >= self.limit:
                return False
            self._count += 1
            return True

    def retry_after(self) -> float:
        """Seconds until the current window resets."""
        with self._lock:
            return max(0.0, self.window_s - (self._clock() - self._window_start))
