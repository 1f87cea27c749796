"""Shared retry policy — one backoff implementation for fetcher and writer.

Usage:
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    page = await policy.run(lambda: connector._get_page(offset, limit))
    policy.call(lambda: writer._commit(batch))

Attempt n (1-based) that fails with a retryable error sleeps
min(base_delay * 2**(n-1), max_delay) before attempt n+1. Errors the
predicate rejects propagate immediately without sleeping.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from ..config import settings

log = logging.getLogger("stocksync.retry")


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retry_on: Callable[[BaseException], bool] = is_retryable
    name: str = "operation"
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    async_sleep: Callable = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        kwargs = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay": settings.retry_base_delay,
            "max_delay": settings.retry_max_delay,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        # Limiter backpressure tells us how long the wait actually is
        hint = getattr(exc, "wait_seconds", 0) or 0
        return max(delay, min(hint, self.max_delay))

    def _should_retry(self, exc: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts or not self.retry_on(exc):
            return False
        log.warning(
            f"{self.name} attempt {attempt}/{self.max_attempts} failed: {exc} — retrying"
        )
        return True

    async def run(self, fn: Callable):
        """Await ``fn()`` with retries. ``fn`` must return a fresh awaitable."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as e:
                if not self._should_retry(e, attempt):
                    raise
                await self.async_sleep(self.delay_for(attempt, e))

    def call(self, fn: Callable):
        """Synchronous variant for store writes."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as e:
                if not self._should_retry(e, attempt):
                    raise
                self.sleep(self.delay_for(attempt, e))
