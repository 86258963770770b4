# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import pytest

from transitpipe.sync.rate_limit import RateLimiter, create_rate_limiter_from_config


class FakeTime:
    """Clock and sleep pair: sleeping advances the clock."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(t: FakeTime, capacity=2, refill_rate=1.0) -> RateLimiter:
    return RateLimiter(capacity=capacity, refill_rate=refill_rate, name="test", clock=t.clock, sleep=t.sleep)


@pytest.mark.asyncio
async def test_burst_then_wait_for_refill():
    t = FakeTime()
    limiter = _limiter(t)

    await limiter.acquire()
    await limiter.acquire()
    assert t.sleeps == []

    await limiter.acquire()
    assert t.sleeps == [pytest.approx(1.0)]


@pytest.mark.asyncio
async def test_retry_after_blocks_until_elapsed():
    t = FakeTime()
    limiter = _limiter(t, capacity=10, refill_rate=10.0)

    limiter.notify_retry_after(5)
    assert limiter.get_available_tokens() == 0

    await limiter.acquire()
    assert t.now >= 5.0
    assert t.sleeps[0] == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_shorter_retry_after_does_not_shorten_pause():
    t = FakeTime()
    limiter = _limiter(t, capacity=10, refill_rate=100.0)

    limiter.notify_retry_after(10)
    limiter.notify_retry_after(1)
    await limiter.acquire()

    assert t.now >= 10.0


@pytest.mark.asyncio
async def test_request_above_capacity_rejected():
    limiter = _limiter(FakeTime(), capacity=2)
    with pytest.raises(ValueError, match="capacity is 2"):
        await limiter.acquire(3)


@pytest.mark.parametrize("capacity, rate", [(0, 1.0), (1, 0.0)])
def test_invalid_construction(capacity, rate):
    with pytest.raises(ValueError):
        RateLimiter(capacity=capacity, refill_rate=rate)


def test_factory_from_config():
    limiter = create_rate_limiter_from_config(rate_limit_per_min=120, name="transit_api")
    assert limiter.capacity == 120
    assert create_rate_limiter_from_config(rate_limit_per_min=None) is None
    assert create_rate_limiter_from_config(rate_limit_per_min=60, burst_size=5).capacity == 5
