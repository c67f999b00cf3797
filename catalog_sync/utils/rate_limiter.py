import asyncio
from collections import deque
from time import monotonic
from typing import Deque

class RateLimiter:
    """Async sliding-window rate limiter for API calls"""

    def __init__(self, max_requests: int, time_window: float):
        self.max_requests = max_requests
        self.time_window = time_window
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is free, then take it"""
        async with self._lock:
            while True:
                now = monotonic()
                while self._timestamps and self._timestamps[0] <= now - self.time_window:
                    self._timestamps.popleft()

                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return

                sleep_time = self.time_window - (now - self._timestamps[0])
                await asyncio.sleep(max(sleep_time, 0.01))
