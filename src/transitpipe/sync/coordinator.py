# SPDX-License-Identifier: Apache-2.0
"""Runs one sync engine per feed, concurrently."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from transitpipe.config import TransitPipeConfig, validate_credentials
from transitpipe.errors import ConfigurationError, TransientSourceError
from transitpipe.storage.local_store import LocalStore

from .backoff import BackoffPolicy
from .cursor import CursorStore
from .engine import Sleep, SyncEngine
from .feeds import FeedSpec, get_feed
from .sources import FeedSource
from .types import SyncReport, SyncState

SourceFactory = Callable[[FeedSpec], FeedSource]


class SyncCoordinator:
    """Fans feeds out to independent engines.

    Credentials are checked for every requested feed before any engine
    starts; a feed whose configuration is unusable gets a ``FAILED`` report
    and never runs, while the remaining feeds proceed.
    """

    def __init__(
        self,
        config: TransitPipeConfig,
        store: LocalStore,
        cursors: CursorStore,
        source_factory: SourceFactory,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.cursors = cursors
        self.source_factory = source_factory
        self.backoff = BackoffPolicy.from_settings(config.retry)
        self._sleep = sleep
        self.log = logging.getLogger(self.__class__.__name__)

    def feed_spec(self, feed_id: str) -> FeedSpec:
        """Feed definition with per-feed config overrides applied."""
        settings = self.config.feed_settings(feed_id)
        return get_feed(feed_id).with_overrides(
            page_size=settings.page_size,
            resource_id=settings.resource_id,
            initial_watermark=settings.start,
        )

    async def preflight(self, feed_id: str, source: FeedSource) -> None:
        """Raise ConfigurationError if ``feed_id`` must not run."""
        validate_credentials(self.config, [feed_id])
        try:
            await source.preflight()
        except TransientSourceError as e:
            # Reachability is the engine's concern; it retries with backoff
            self.log.warning(f"{feed_id}: preflight inconclusive ({e}); starting anyway")

    async def run(self, feed_ids: Optional[Iterable[str]] = None) -> Dict[str, SyncReport]:
        """Sync the given feeds (default: every enabled feed) and return their reports."""
        ids: List[str] = list(feed_ids) if feed_ids is not None else self.config.enabled_feeds()
        reports: Dict[str, SyncReport] = {}
        engines: List[SyncEngine] = []
        sources: List[FeedSource] = []

        try:
            for feed_id in ids:
                spec = self.feed_spec(feed_id)
                source = self.source_factory(spec)
                sources.append(source)
                try:
                    await self.preflight(feed_id, source)
                except ConfigurationError as e:
                    self.log.error(f"{feed_id}: not starting: {e}")
                    reports[feed_id] = await self._refused(feed_id, e)
                    continue
                engines.append(
                    SyncEngine(
                        spec,
                        source,
                        self.store,
                        self.cursors,
                        backoff=self.backoff,
                        sleep=self._sleep,
                    )
                )

            self.log.info(f"Starting sync for {len(engines)} feed(s): {[e.feed_id for e in engines]}")
            results = await asyncio.gather(*(engine.run() for engine in engines), return_exceptions=True)
        finally:
            for source in sources:
                await source.aclose()

        errors = []
        for engine, result in zip(engines, results):
            if isinstance(result, BaseException):
                self.log.error(f"{engine.feed_id}: sync aborted: {result!r}")
                errors.append(result)
            else:
                reports[engine.feed_id] = result
        if errors:
            raise errors[0]
        return {feed_id: reports[feed_id] for feed_id in ids if feed_id in reports}

    async def _refused(self, feed_id: str, error: ConfigurationError) -> SyncReport:
        report = SyncReport(feed_id=feed_id, state=SyncState.FAILED, error=str(error))
        report.finished_at = datetime.now(timezone.utc)
        await self.store.record_run(report)
        return report
