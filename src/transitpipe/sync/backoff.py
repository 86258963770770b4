# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional

from transitpipe.config import RetrySettings


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff with proportional jitter.

    ``delay(n)`` is ``min(max_delay, base_delay * multiplier ** (n - 1))`` plus
    up to ``jitter`` of that value, so attempt 1 waits roughly ``base_delay``.
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.2
    max_attempts: Optional[int] = 8

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> BackoffPolicy:
        return cls(
            base_delay=settings.base_delay,
            multiplier=settings.multiplier,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
            max_attempts=settings.max_attempts,
        )

    def delay(
        self,
        attempt: int,
        retry_after: Optional[float] = None,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        base = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        sleep = min(self.max_delay, base + rand(0, self.jitter * base))
        if retry_after is not None:
            sleep = max(sleep, retry_after)
        return sleep

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts
