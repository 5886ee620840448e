"""
Per-tool rate limiting (fixed one-minute windows).
"""

import threading
import time
from typing import Callable, Dict

WINDOW_SECONDS = 60.0


class RateLimiter:
    def __init__(self, per_minute: int = 30, clock: Callable[[], float] = time.monotonic):
        self.per_minute = per_minute
        self._clock = clock
        self._windows: Dict[str, list] = {}  # key -> [count, reset_at]
        self._lock = threading.Lock()

    def check(self, key: str) -> bool:
        """Count one call against `key`. False once the window is exhausted."""
        if self.per_minute <= 0:
            return True
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window[1]:
                self._windows[key] = [1, now + WINDOW_SECONDS]
                return True
            if window[0] >= self.per_minute:
                return False
            window[0] += 1
            return True
