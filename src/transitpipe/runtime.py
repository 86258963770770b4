# SPDX-License-Identifier: Apache-2.0
"""Process-scoped components with an explicit lifecycle.

Everything with state (store handles, the HTTP client, the rate limiter and
the aggregate cache) is created in :meth:`Runtime.start` and released in
:meth:`Runtime.close`; nothing lives at module level, so tests get isolated
instances by building their own runtime.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional

import httpx

from transitpipe.aggregation.service import AggregateService
from transitpipe.cache.aggregate_cache import AggregateCache
from transitpipe.config import TransitPipeConfig
from transitpipe.storage.local_store import LocalStore
from transitpipe.sync.coordinator import SyncCoordinator
from transitpipe.sync.cursor import CursorStore
from transitpipe.sync.engine import Sleep
from transitpipe.sync.feeds import FeedSpec
from transitpipe.sync.rate_limit import RateLimiter, create_rate_limiter_from_config
from transitpipe.sync.sources import FeedSource, build_source
from transitpipe.sync.types import SyncReport

logger = logging.getLogger(__name__)


class Runtime:
    """Owns the store, cursors, cache, read service and HTTP client.

    Usage:
        async with Runtime(config) as runtime:
            reports = await runtime.sync(["passups"])
            summary = await runtime.aggregates.passups_by_month()
    """

    def __init__(
        self,
        config: TransitPipeConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._sleep = sleep
        self._started = False

        self.store: Optional[LocalStore] = None
        self.cursors: Optional[CursorStore] = None
        self.cache: Optional[AggregateCache] = None
        self.aggregates: Optional[AggregateService] = None
        self.rate_limiter: Optional[RateLimiter] = None

    async def __aenter__(self) -> Runtime:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self._started:
            return
        db_path = self.config.database_path
        self.store = LocalStore(db_path)
        await self.store.initialize()
        self.cursors = CursorStore(db_path)
        self.cache = AggregateCache(
            default_ttl=self.config.cache.default_ttl,
            max_entries=self.config.cache.max_entries,
        )
        self.aggregates = AggregateService(self.store, self.cache)
        self.rate_limiter = create_rate_limiter_from_config(
            self.config.source.rate_limit_per_min, name="transit_api"
        )
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.config.source.timeout)
        self._started = True
        logger.debug(f"Runtime started for {db_path}")

    async def close(self) -> None:
        if not self._started:
            return
        await self.cache.close()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._started = False
        logger.debug("Runtime closed")

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("Runtime is not started; use `async with Runtime(config)`")

    def source_for(self, spec: FeedSpec) -> FeedSource:
        self._require_started()
        return build_source(
            spec, self.config, client=self._http_client, rate_limiter=self.rate_limiter
        )

    def coordinator(self) -> SyncCoordinator:
        self._require_started()
        return SyncCoordinator(
            self.config, self.store, self.cursors, self.source_for, sleep=self._sleep
        )

    async def sync(self, feed_ids: Optional[Iterable[str]] = None) -> Dict[str, SyncReport]:
        """Run the coordinator and drop cached aggregates over feeds that changed."""
        reports = await self.coordinator().run(feed_ids)
        changed = [feed_id for feed_id, report in reports.items() if report.inserted or report.duplicates]
        if changed:
            self.aggregates.invalidate_feeds(changed)
        return reports
