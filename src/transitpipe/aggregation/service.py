# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from transitpipe.cache.aggregate_cache import AggregateCache, cache_key
from transitpipe.errors import AggregateQueryError, StoreQueryError
from transitpipe.storage.local_store import LocalStore

from .queries import AGGREGATES


class AggregateService:
    """Read layer: aggregate computations served through the cache.

    Reads only ever see the store's last committed state, so they keep
    working whatever the health of the sync engines.
    """

    def __init__(self, store: LocalStore, cache: AggregateCache, ttl: Optional[float] = None):
        self.store = store
        self.cache = cache
        self.ttl = ttl
        self.log = logging.getLogger(self.__class__.__name__)

    async def get(self, name: str, ttl: Optional[float] = None, **params: Any) -> Any:
        """Cached value of aggregate ``name`` for ``params``.

        Raises:
            KeyError: unknown aggregate name.
            AggregateQueryError: the underlying query failed (not cached).
        """
        try:
            aggregate = AGGREGATES[name]
        except KeyError:
            raise KeyError(f"Unknown aggregate: {name}. Valid: {sorted(AGGREGATES)}") from None

        async def compute() -> Any:
            try:
                return await aggregate.fn(self.store, **params)
            except StoreQueryError as e:
                raise AggregateQueryError(name, e) from e

        key = cache_key(name, **params)
        return await self.cache.get_or_compute(key, compute, ttl=ttl or self.ttl)

    async def otp_route_summary(
        self, route: Optional[str] = None, lookback_days: Optional[int] = None
    ) -> Any:
        return await self.get("otp_route_summary", route=route, lookback_days=lookback_days)

    async def passups_by_month(self, route: Optional[str] = None) -> Any:
        return await self.get("passups_by_month", route=route)

    async def ridership_by_season(self, route: Optional[str] = None) -> Any:
        return await self.get("ridership_by_season", route=route)

    async def busiest_stops(
        self, route: Optional[str] = None, limit: int = 10, season_name: Optional[str] = None
    ) -> Any:
        return await self.get("busiest_stops", route=route, limit=limit, season_name=season_name)

    def invalidate_feeds(self, feed_ids: Iterable[str]) -> int:
        """Drop cached aggregates computed from any of ``feed_ids``."""
        changed = set(feed_ids)
        affected = 0
        for aggregate in AGGREGATES.values():
            if aggregate.feeds & changed:
                affected += self.cache.invalidate(aggregate.name)
        if affected:
            self.log.info(f"Invalidated {affected} cached aggregate(s) after sync of {sorted(changed)}")
        return affected
