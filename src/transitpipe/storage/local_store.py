# SPDX-License-Identifier: Apache-2.0
"""Local SQLite store: idempotent page writes and the read-only query contract."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import aiosqlite

from transitpipe.errors import StoreQueryError, StoreWriteError
from transitpipe.metrics import COMMIT_LATENCY
from transitpipe.sync.feeds import FEEDS, FeedSpec
from transitpipe.sync.types import SyncReport, WriteMode, WriteResult

from .sqlite_async import SqliteAsyncMixin

# Tables the read contract is allowed to count by name
KNOWN_TABLES = frozenset(spec.table for spec in FEEDS.values()) | {"sync_cursors", "sync_runs"}


def build_write_sql(spec: FeedSpec) -> str:
    """INSERT statement implementing the feed's write mode."""
    columns = ", ".join(spec.columns)
    placeholders = ", ".join("?" for _ in spec.columns)
    if spec.write_mode == WriteMode.APPEND:
        return f"INSERT INTO {spec.table} ({columns}) VALUES ({placeholders})"
    if spec.write_mode == WriteMode.INSERT_IGNORE:
        return f"INSERT OR IGNORE INTO {spec.table} ({columns}) VALUES ({placeholders})"

    updates = ", ".join(
        f"{column} = excluded.{column}" for column in spec.columns if column not in spec.key_columns
    )
    return (
        f"INSERT INTO {spec.table} ({columns}) VALUES ({placeholders}) "
        f"ON CONFLICT({', '.join(spec.key_columns)}) DO UPDATE SET "
        f"{updates}, last_updated = CURRENT_TIMESTAMP"
    )


class LocalStore(SqliteAsyncMixin):
    """Durable store for normalized feed records.

    Every page is applied inside one ``BEGIN IMMEDIATE`` transaction: either
    all of its rows become visible or none do. Reads go through
    :meth:`fetch_all` / :meth:`fetch_one` / :meth:`count`, which raise
    :class:`StoreQueryError` on failure rather than returning empty results.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        self.log = logging.getLogger(self.__class__.__name__)

    async def initialize(self) -> List[str]:
        """Create the database file and apply pending migrations."""
        from transitpipe.bootstrap import bootstrap

        return await asyncio.to_thread(bootstrap, self.db_path)

    # ---------- write path ----------
    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Scoped write transaction: committed on normal exit, rolled back otherwise.

        Raises:
            StoreWriteError: when SQLite rejects any statement or the commit.
        """
        try:
            async with self._write_conn() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield db
                    await db.execute("COMMIT")
                except BaseException:
                    if db.in_transaction:
                        await db.execute("ROLLBACK")
                    raise
        except aiosqlite.Error as e:
            raise StoreWriteError(f"Transaction on {self.db_path} rolled back: {e}") from e

    async def write_batch(self, spec: FeedSpec, rows: Sequence[Dict[str, Any]]) -> WriteResult:
        """Apply one page of normalized rows atomically through the feed's write mode."""
        if not rows:
            return WriteResult(inserted=0, duplicates=0)

        sql = build_write_sql(spec)
        params = [tuple(row.get(column) for column in spec.columns) for row in rows]

        start = time.perf_counter()
        async with self.transaction() as db:
            if spec.write_mode == WriteMode.UPSERT:
                # rowcount counts updates too; only a size change means new keys
                before = await self._scalar(db, f"SELECT COUNT(*) FROM {spec.table}")
                await db.executemany(sql, params)
                after = await self._scalar(db, f"SELECT COUNT(*) FROM {spec.table}")
                inserted = after - before
            else:
                cursor = await db.executemany(sql, params)
                inserted = cursor.rowcount
        COMMIT_LATENCY.labels(feed=spec.feed_id).observe(time.perf_counter() - start)

        result = WriteResult(inserted=inserted, duplicates=len(rows) - inserted)
        self.log.debug(
            f"{spec.feed_id}: {result.inserted} inserted, {result.duplicates} already present"
        )
        return result

    async def record_run(self, report: SyncReport) -> None:
        """Persist a finished run's summary into ``sync_runs``."""
        finished = report.finished_at or report.started_at
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO sync_runs (
                    feed_id, state, started_at, finished_at, start_watermark, end_watermark,
                    pages, fetched, inserted, duplicates, rejected, retries, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    report.feed_id,
                    report.state.value,
                    report.started_at.isoformat(),
                    finished.isoformat(),
                    str(report.start_watermark) if report.start_watermark else None,
                    str(report.end_watermark) if report.end_watermark else None,
                    report.pages,
                    report.fetched,
                    report.inserted,
                    report.duplicates,
                    report.rejected,
                    report.retries,
                    report.error,
                ),
            )

    async def optimize(self, vacuum: bool = True) -> None:
        """Refresh planner statistics and optionally compact the file."""
        try:
            async with self._write_conn() as db:
                await db.execute("ANALYZE")
                await db.execute("PRAGMA optimize")
                if vacuum:
                    await db.execute("VACUUM")
        except aiosqlite.Error as e:
            raise StoreWriteError(f"Optimizing {self.db_path} failed: {e}") from e
        self.log.info(f"Optimized {self.db_path}")

    # ---------- read contract ----------
    async def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        try:
            async with self._read_conn() as db:
                cursor = await db.execute(sql, tuple(params))
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreQueryError(f"Query failed: {e}") from e
        return [dict(row) for row in rows]

    async def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        try:
            async with self._read_conn() as db:
                cursor = await db.execute(sql, tuple(params))
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreQueryError(f"Query failed: {e}") from e
        return dict(row) if row is not None else None

    async def count(self, table: str) -> int:
        if table not in KNOWN_TABLES:
            raise StoreQueryError(f"Unknown table: {table}")
        row = await self.fetch_one(f"SELECT COUNT(*) AS n FROM {table}")
        return int(row["n"]) if row else 0

    async def table_counts(self) -> Dict[str, int]:
        """Row count per feed table, keyed by feed id."""
        return {feed_id: await self.count(spec.table) for feed_id, spec in FEEDS.items()}

    async def recent_runs(self, feed_id: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        if feed_id:
            return await self.fetch_all(
                "SELECT * FROM sync_runs WHERE feed_id = ? ORDER BY id DESC LIMIT ?",
                (feed_id, limit),
            )
        return await self.fetch_all("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,))

    @staticmethod
    async def _scalar(db: aiosqlite.Connection, sql: str) -> int:
        cursor = await db.execute(sql)
        row = await cursor.fetchone()
        return int(row[0])
