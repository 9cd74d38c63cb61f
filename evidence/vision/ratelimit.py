"""
Sliding-window rate limiter for the vision inference client.

Two windows (per-minute, per-hour) hold timestamps of calls that were
charged against the quota. Before dispatch the caller checks for headroom;
after a successful call (or a remote 429) it records a timestamp.

The limiter is shared by every orchestrator in the process, so all
mutation happens under a lock. No awaits happen while the lock is held.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from evidence.models.schemas import RateLimitStatus

MINUTE_S = 60.0
HOUR_S = 60.0 * 60.0


class SlidingWindowRateLimiter:
    def __init__(
        self,
        requests_per_minute: int = 20,
        requests_per_hour: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_minute < 1 or requests_per_hour < 1:
            raise ValueError("rate limits must be >= 1")
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self._clock = clock
        self._minute: deque[float] = deque()
        self._hour: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._minute and self._minute[0] <= now - MINUTE_S:
            self._minute.popleft()
        while self._hour and self._hour[0] <= now - HOUR_S:
            self._hour.popleft()

    def has_capacity(self) -> bool:
        with self._lock:
            self._prune(self._clock())
            return (
                len(self._minute) < self.requests_per_minute
                and len(self._hour) < self.requests_per_hour
            )

    def record(self) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._minute.append(now)
            self._hour.append(now)

    def status(self) -> RateLimitStatus:
        with self._lock:
            self._prune(self._clock())
            minute, hour = len(self._minute), len(self._hour)
        return RateLimitStatus(
            minute=minute,
            hour=hour,
            available=minute < self.requests_per_minute and hour < self.requests_per_hour,
        )
