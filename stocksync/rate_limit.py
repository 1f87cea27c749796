"""Outbound rate limiter — token bucket shared by every Finale request.

Baseline is 2 requests/second with a bucket of 1, so N sequential calls
take at least (N-1)/2 seconds no matter how many coroutines are fetching.
State lives in process memory only and resets on restart.

Also hosts the inbound API limiter (slowapi) that keeps manual sync
triggers from piling up.

Called by: connectors/finale.py (before every HTTP request), routers/sync.py (api_limiter)
Depends on: config.py (rate_limit_* settings), errors.py
"""

import asyncio
import time

from loguru import logger
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings
from .errors import CapacityExceededError


class TokenBucket:
    """Async token bucket. Waiters are served in arrival order."""

    def __init__(self, rate: float = 2.0, capacity: int = 1, clock=time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = float(rate)
        self.capacity = int(capacity)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self.granted = 0
        self.rejected = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._last_refill = now

    async def acquire(self, timeout: float | None = None) -> None:
        """Take one token, waiting for a refill if needed.

        Raises CapacityExceededError when no token can be granted before
        ``timeout`` seconds have passed; the caller may retry later.
        """
        deadline = None if timeout is None else self._clock() + timeout

        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except asyncio.TimeoutError:
            self.rejected += 1
            raise CapacityExceededError(
                f"no token within {timeout:.1f}s (queue busy)", wait_seconds=1 / self.rate
            )

        try:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    self.granted += 1
                    return
                wait = (1 - self._tokens) / self.rate
                if deadline is not None and self._clock() + wait > deadline:
                    self.rejected += 1
                    raise CapacityExceededError(
                        f"no token within {timeout:.1f}s", wait_seconds=wait
                    )
                await asyncio.sleep(wait)
        finally:
            self._lock.release()

    def status(self) -> dict:
        self._refill()
        return {
            "tokens": round(self._tokens, 3),
            "capacity": self.capacity,
            "rate_per_second": self.rate,
            "last_refill": self._last_refill,
            "granted": self.granted,
            "rejected": self.rejected,
        }

    def reset(self) -> None:
        self._tokens = float(self.capacity)
        self._last_refill = self._clock()
        self.granted = 0
        self.rejected = 0


_limiter: TokenBucket | None = None


def get_rate_limiter() -> TokenBucket:
    """Process-wide limiter for the Finale account."""
    global _limiter
    if _limiter is None:
        _limiter = TokenBucket(
            rate=settings.rate_limit_requests_per_second,
            capacity=settings.rate_limit_capacity,
        )
        logger.info(
            "Finale rate limiter ready",
            rate=_limiter.rate,
            capacity=_limiter.capacity,
        )
    return _limiter


# Inbound: per-client limits on the HTTP API (in-memory storage)
api_limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_api_default],
    enabled=settings.rate_limit_api_enabled,
)
