"""Fixed-window rate limiting for turn starts."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from sanctuary.errors import RateLimitExceededError


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allows ``max_requests`` per identifier in each window of ``window_seconds``."""

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str) -> int:
        """Count one request; return how many remain or raise when none do."""
        now = self._clock()
        with self._lock:
            self._evict(now)
            window = self._windows.get(identifier)
            if window is None:
                self._windows[identifier] = _Window(count=1, reset_at=now + self._window_seconds)
                return self._max_requests - 1
            if window.count >= self._max_requests:
                raise RateLimitExceededError(identifier, max(1, math.ceil(window.reset_at - now)))
            window.count += 1
            return self._max_requests - window.count

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._windows.pop(identifier, None)

    def _evict(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
