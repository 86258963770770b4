# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from transitpipe.metrics import RATE_LIMITER_WAITS


class RateLimiter:
    """Async token bucket limiter for the credentialed metadata API.

    Tokens are added to the bucket at ``refill_rate`` per second up to
    ``capacity``; a Retry-After notice empties the bucket and blocks every
    caller until it has elapsed.

    Args:
        capacity: Maximum number of tokens in the bucket (burst size)
        refill_rate: Tokens added per second
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        name: str = "unknown",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        if capacity <= 0:
            raise ValueError("Capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("Refill rate must be positive")

        self._capacity = capacity
        self._refill_rate = refill_rate
        self._name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._retry_after_until: Optional[float] = None
        self._lock: Optional[asyncio.Lock] = None

    async def acquire(self, tokens: int = 1) -> None:
        """Wait until ``tokens`` are available and take them.

        Raises:
            ValueError: If tokens > capacity (impossible to fulfill)
        """
        if tokens > self._capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens, capacity is {self._capacity}")

        # Created lazily so the limiter can be built outside a running loop
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            while True:
                now = self._clock()
                if self._retry_after_until is not None:
                    if now < self._retry_after_until:
                        RATE_LIMITER_WAITS.labels(source=self._name).inc()
                        await self._sleep(self._retry_after_until - now)
                        continue
                    self._retry_after_until = None

                self._refill_tokens()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return

                RATE_LIMITER_WAITS.labels(source=self._name).inc()
                await self._sleep((tokens - self._tokens) / self._refill_rate)

    def notify_retry_after(self, seconds: float) -> None:
        """Handle a Retry-After header: drain the bucket and pause until it passes."""
        now = self._clock()
        until = now + max(0.0, seconds)
        if self._retry_after_until is None or until > self._retry_after_until:
            self._retry_after_until = until
        self._tokens = 0.0
        self._last_refill = now

    def _refill_tokens(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_rate)
        self._last_refill = now

    def get_available_tokens(self) -> float:
        """Current number of available tokens (for testing/debugging)."""
        self._refill_tokens()
        return self._tokens

    @property
    def capacity(self) -> int:
        return self._capacity


def create_rate_limiter_from_config(
    rate_limit_per_min: Optional[int] = None,
    burst_size: Optional[int] = None,
    name: str = "unknown",
) -> Optional[RateLimiter]:
    """Create a RateLimiter from configuration values.

    Returns:
        RateLimiter instance or None if rate limiting is disabled
    """
    if not rate_limit_per_min or rate_limit_per_min <= 0:
        return None
    capacity = burst_size or rate_limit_per_min
    return RateLimiter(capacity=capacity, refill_rate=rate_limit_per_min / 60.0, name=name)
