"""Request budget shared by all reputation lookups (token bucket)."""

from __future__ import annotations

import asyncio
import time


class TokenBucket:
    """Async token bucket; :meth:`acquire` waits instead of refusing."""

    def __init__(self, rate_per_sec: float, burst: float):
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be positive")
        self.rate = float(rate_per_sec)
        self.capacity = float(max(1.0, burst))
        self.tokens = self.capacity
        self.last = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last) * self.rate)
        self.last = now

    def allow(self, cost: float = 1.0) -> bool:
        self._refill()
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    async def acquire(self, cost: float = 1.0) -> None:
        # The lock keeps waiters in FIFO order.
        async with self._lock:
            while not self.allow(cost):
                await asyncio.sleep((cost - self.tokens) / self.rate)
