from __future__ import annotations

import threading
import time
from collections.abc import Callable


class TokenBucket:
    """Non-blocking token bucket.

    ``capacity`` tokens refill linearly over ``window_seconds``. Refill and
    withdrawal happen under the same lock so concurrent callers never spend
    the same token twice.
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.capacity = capacity
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    @property
    def refill_rate(self) -> float:
        return self.capacity / self.window_seconds

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def release(self) -> None:
        with self._lock:
            self._tokens = min(float(self.capacity), self._tokens + 1.0)

    def available(self) -> int:
        with self._lock:
            self._refill()
            return int(self._tokens)

    def reset(self) -> None:
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_refill = self._clock()
