# SPDX-License-Identifier: Apache-2.0
"""Keyed, TTL-bounded, single-flight cache for read-side aggregates.

At most one computation runs per key. Callers that arrive while it is in
flight await the same task; a caller being cancelled does not cancel the
shared computation. Failures reach every waiter and leave the key empty.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from transitpipe.metrics import CACHE_COMPUTE_SECONDS, CACHE_ENTRIES, CACHE_LOOKUPS

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    """Aggregate name plus its parameters, compared structurally."""

    name: str
    params: Tuple[Tuple[str, Any], ...] = ()

    def __str__(self) -> str:
        if not self.params:
            return self.name
        args = ",".join(f"{k}={v}" for k, v in self.params)
        return f"{self.name}({args})"


def _freeze(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, set):
        return tuple(sorted(_freeze(v) for v in value))
    hash(value)
    return value


def cache_key(name: str, **params: Any) -> CacheKey:
    """Build a key; parameter order does not matter, ``None`` values are kept.

    Examples:
        >>> cache_key("otp", route="11", days=30) == cache_key("otp", days=30, route="11")
        True
    """
    return CacheKey(name, tuple(sorted((k, _freeze(v)) for k, v in params.items())))


class CacheState(str, Enum):
    EMPTY = "empty"
    COMPUTING = "computing"
    FRESH = "fresh"
    STALE = "stale"


@dataclass
class _Entry:
    value: Any = None
    computed_at: Optional[float] = None
    ttl: float = 0.0
    task: Optional["asyncio.Task[Any]"] = None
    invalidated: bool = False

    def is_fresh(self, now: float) -> bool:
        return self.computed_at is not None and now - self.computed_at < self.ttl


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    joins: int = 0
    failures: int = 0
    evictions: int = 0
    entries: int = 0
    in_flight: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class AggregateCache:
    """Single-flight TTL cache with a bounded LRU of entries.

    Args:
        default_ttl: Seconds a computed value stays fresh when no ttl is passed
        max_entries: Upper bound on cached keys; entries with work in flight are never evicted
        clock: Monotonic time source (injected by tests)
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, _Entry]" = OrderedDict()
        self._stats = CacheStats()
        self._superseded: "set[asyncio.Task[Any]]" = set()
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    def state(self, key: CacheKey) -> CacheState:
        entry = self._entries.get(key)
        if entry is None:
            return CacheState.EMPTY
        if entry.task is not None:
            return CacheState.COMPUTING
        if entry.is_fresh(self._clock()):
            return CacheState.FRESH
        return CacheState.STALE

    async def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> T:
        """Return the fresh value for ``key``, computing it at most once concurrently."""
        if self._closed:
            raise RuntimeError("AggregateCache is closed")
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self._entries.move_to_end(key)
            self._stats.hits += 1
            CACHE_LOOKUPS.labels(aggregate=key.name, result="hit").inc()
            return entry.value

        if entry is not None and entry.task is not None and entry.invalidated:
            # Its result reflects data from before the invalidation; start over
            self._superseded.add(entry.task)
            entry.task.add_done_callback(self._superseded.discard)
            entry = None

        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        self._entries.move_to_end(key)

        if entry.task is None:
            self._stats.misses += 1
            CACHE_LOOKUPS.labels(aggregate=key.name, result="miss").inc()
            entry.invalidated = False
            entry.task = asyncio.create_task(self._compute(key, entry, compute_fn, ttl))
            entry.task.add_done_callback(_consume_exception)
            self._evict()
        else:
            self._stats.joins += 1
            CACHE_LOOKUPS.labels(aggregate=key.name, result="join").inc()

        CACHE_ENTRIES.set(len(self._entries))
        return await asyncio.shield(entry.task)

    async def _compute(
        self, key: CacheKey, entry: _Entry, compute_fn: Callable[[], Awaitable[T]], ttl: float
    ) -> T:
        start = time.perf_counter()
        try:
            value = await compute_fn()
        except BaseException:
            self._stats.failures += 1
            if self._entries.get(key) is entry:
                del self._entries[key]
            logger.debug(f"Computation of {key} failed; entry reset")
            raise
        finally:
            entry.task = None
            CACHE_COMPUTE_SECONDS.labels(aggregate=key.name).observe(time.perf_counter() - start)
            CACHE_ENTRIES.set(len(self._entries))

        if entry.invalidated or self._entries.get(key) is not entry:
            # Waiters get the value, but it was computed against data since invalidated
            if self._entries.get(key) is entry:
                del self._entries[key]
        else:
            entry.value = value
            entry.computed_at = self._clock()
            entry.ttl = ttl
        return value

    def _evict(self) -> None:
        if len(self._entries) <= self.max_entries:
            return
        for key in list(self._entries):
            if len(self._entries) <= self.max_entries:
                break
            if self._entries[key].task is None:
                del self._entries[key]
                self._stats.evictions += 1

    def invalidate(self, name: Optional[str] = None) -> int:
        """Drop entries (all, or those of one aggregate); returns how many were affected.

        Entries with a computation in flight are flagged instead: callers
        already waiting still receive the result, but it is not kept, and
        the next lookup starts a fresh computation.
        """
        affected = 0
        for key in list(self._entries):
            if name is not None and key.name != name:
                continue
            entry = self._entries[key]
            if entry.task is not None:
                entry.invalidated = True
            else:
                del self._entries[key]
            affected += 1
        CACHE_ENTRIES.set(len(self._entries))
        return affected

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            joins=self._stats.joins,
            failures=self._stats.failures,
            evictions=self._stats.evictions,
            entries=len(self._entries),
            in_flight=sum(1 for e in self._entries.values() if e.task is not None),
        )

    async def close(self) -> None:
        """Cancel in-flight computations and drop every entry."""
        self._closed = True
        tasks = [e.task for e in self._entries.values() if e.task is not None]
        tasks.extend(self._superseded)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._entries.clear()
        CACHE_ENTRIES.set(0)


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Marks the exception retrieved when every waiter was cancelled
    if not task.cancelled():
        task.exception()
