# SPDX-License-Identifier: Apache-2.0
"""Incremental sync engine: fetch, validate, commit, then advance the cursor.

One engine instance drives one feed as a single sequential loop. The cursor
is moved only after the page it covers has been committed, so a crash
between the two re-fetches an already applied page on the next run; keyed
feeds absorb that through their idempotent write path.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from transitpipe.errors import (
    ConfigurationError,
    CursorRegressionError,
    RecordValidationError,
    StoreQueryError,
    StoreWriteError,
    TransientError,
    TransientSourceError,
    TransitPipeError,
)
from transitpipe.metrics import (
    ACTIVE_SYNCS,
    SYNC_PAGES,
    SYNC_REJECTED,
    SYNC_RETRIES,
    SYNC_ROWS,
    SYNC_RUNS,
)
from transitpipe.storage.local_store import LocalStore

from .backoff import BackoffPolicy
from .cursor import CursorStore
from .feeds import FeedSpec
from .sources import FeedSource
from .types import RawRecord, SyncReport, SyncState, Watermark

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class _PendingAdvance:
    target: Watermark
    committed: int
    drained: bool


class SyncEngine:
    """Drives one feed from its cursor position to the end of the remote feed.

    Args:
        spec: Feed definition (table, write mode, validation model, ordering)
        source: Adapter returning ordered pages after a watermark
        store: Local store applying pages atomically
        cursors: Cursor table
        backoff: Retry policy for transient failures
        sleep: Awaitable used for backoff waits (injected by tests)
    """

    def __init__(
        self,
        spec: FeedSpec,
        source: FeedSource,
        store: LocalStore,
        cursors: CursorStore,
        *,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.spec = spec
        self.source = source
        self.store = store
        self.cursors = cursors
        self.backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self.state = SyncState.IDLE
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def feed_id(self) -> str:
        return self.spec.feed_id

    def _transition(self, state: SyncState) -> None:
        if state != self.state:
            self.log.debug(f"{self.feed_id}: {self.state.value} -> {state.value}")
        self.state = state

    async def run(self) -> SyncReport:
        """Sync until the feed is drained or the retry budget runs out.

        Configuration failures end the run immediately in ``FAILED``. Any
        exception outside the transitpipe hierarchy propagates; whatever was
        committed before it stays committed.
        """
        report = SyncReport(feed_id=self.feed_id)
        self._transition(SyncState.IDLE)
        ACTIVE_SYNCS.inc()
        try:
            await self._loop(report)
        finally:
            ACTIVE_SYNCS.dec()

        report.state = self.state
        report.finished_at = datetime.now(timezone.utc)
        SYNC_RUNS.labels(feed=self.feed_id, state=report.state.value).inc()
        await self._record(report)

        summary = (
            f"{self.feed_id}: {report.state.value} after {report.pages} pages, "
            f"{report.inserted} inserted, {report.duplicates} duplicates, "
            f"{report.rejected} rejected, {report.retries} retries, "
            f"watermark {report.end_watermark}"
        )
        if report.succeeded:
            self.log.info(summary)
        else:
            self.log.error(f"{summary}: {report.error}")
        return report

    async def _loop(self, report: SyncReport) -> None:
        page_size = self.spec.page_size
        watermark: Optional[Watermark] = None
        generation = 0
        pending: Optional[_PendingAdvance] = None
        attempt = 0

        while True:
            try:
                if watermark is None:
                    watermark, generation = await self._start_position()
                    report.start_watermark = watermark
                    report.end_watermark = watermark

                if pending is not None:
                    self._transition(SyncState.ADVANCING)
                    await self.cursors.advance(
                        self.feed_id, pending.target, pending.committed, generation=generation
                    )
                    watermark = pending.target
                    report.end_watermark = watermark
                    drained, pending = pending.drained, None
                    if drained:
                        self._transition(SyncState.DRAINED)
                        return
                    continue

                self._transition(SyncState.FETCHING)
                page = await self.source.fetch_page(watermark, page_size)
                if not page:
                    self._transition(SyncState.DRAINED)
                    return

                self._transition(SyncState.COMMITTING)
                rows, rejected, page_max = self._validate(page)
                if page_max is None or page_max <= watermark:
                    raise TransientSourceError(
                        f"{self.feed_id}: page of {len(page)} records does not move past {watermark}",
                        feed_id=self.feed_id,
                    )
                result = await self.store.write_batch(self.spec, rows)

                self._count_page(report, len(page), result.inserted, result.duplicates, rejected)
                attempt = 0
                pending = _PendingAdvance(
                    target=page_max, committed=result.inserted, drained=len(page) < page_size
                )

            except ConfigurationError as e:
                self._fail(report, e)
                return
            except CursorRegressionError as e:
                self._fail(report, e)
                return
            except (TransientError, StoreQueryError) as e:
                attempt += 1
                report.retries += 1
                SYNC_RETRIES.labels(feed=self.feed_id, stage=self.state.value).inc()
                if self.backoff.exhausted(attempt):
                    self._fail(report, e, f"gave up after {attempt} attempts: ")
                    return
                retry_after = getattr(e, "retry_after", None)
                delay = self.backoff.delay(attempt, retry_after=retry_after)
                self.log.warning(
                    f"{self.feed_id}: {self.state.value} failed ({e}); "
                    f"retry {attempt} in {delay:.2f}s from {watermark}"
                )
                self._transition(SyncState.BACKOFF)
                await self._sleep(delay)
            except TransitPipeError as e:
                self._fail(report, e)
                return

    async def _start_position(self) -> Tuple[Watermark, int]:
        default = self.spec.default_watermark
        if self.spec.snapshot:
            # Snapshot feeds re-list from the start under a new cursor generation
            return default, await self.cursors.next_generation(self.feed_id, default)
        return await self.cursors.ensure(self.feed_id, default), 0

    def _validate(
        self, page: List[RawRecord]
    ) -> Tuple[List[Dict[str, Any]], Counter, Optional[Watermark]]:
        """Normalize a page, skipping invalid records individually.

        The returned watermark is the maximum over every record, rejected ones
        included, so a record that can never validate does not pin the cursor.
        """
        rows: List[Dict[str, Any]] = []
        rejected: Counter = Counter()
        page_max: Optional[Watermark] = None
        for raw in page:
            try:
                position = self.source.extract_watermark(raw)
            except (KeyError, TypeError, ValueError):
                position = None
            if position is not None and (page_max is None or position > page_max):
                page_max = position

            try:
                rows.append(self.spec.normalize(raw))
            except RecordValidationError as e:
                rejected[e.reason] += 1
                self.log.debug(f"{self.feed_id}: skipping record at {position}: {e}")
        if rejected:
            self.log.warning(
                f"{self.feed_id}: skipped {sum(rejected.values())} of {len(page)} records "
                f"failing validation: {dict(rejected)}"
            )
        return rows, rejected, page_max

    def _count_page(
        self, report: SyncReport, fetched: int, inserted: int, duplicates: int, rejected: Counter
    ) -> None:
        report.pages += 1
        report.fetched += fetched
        report.inserted += inserted
        report.duplicates += duplicates
        report.rejected_by_reason.update(rejected)

        SYNC_PAGES.labels(feed=self.feed_id).inc()
        SYNC_ROWS.labels(feed=self.feed_id, outcome="inserted").inc(inserted)
        SYNC_ROWS.labels(feed=self.feed_id, outcome="duplicate").inc(duplicates)
        for reason, n in rejected.items():
            SYNC_REJECTED.labels(feed=self.feed_id, reason=reason).inc(n)
            SYNC_ROWS.labels(feed=self.feed_id, outcome="rejected").inc(n)

    def _fail(self, report: SyncReport, error: Exception, prefix: str = "") -> None:
        report.error = f"{prefix}{type(error).__name__}: {error}"
        self._transition(SyncState.FAILED)

    async def _record(self, report: SyncReport) -> None:
        try:
            await self.store.record_run(report)
        except StoreWriteError as e:
            # The run's data and cursor are already durable; only the summary row is lost
            self.log.error(f"{self.feed_id}: could not record sync run: {e}")
