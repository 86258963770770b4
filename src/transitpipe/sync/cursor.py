# SPDX-License-Identifier: Apache-2.0
"""Per-feed watermark persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Union

import aiosqlite

from transitpipe.errors import CursorRegressionError, StoreQueryError, StoreWriteError
from transitpipe.storage.sqlite_async import SqliteAsyncMixin

from .types import Watermark


@dataclass(frozen=True)
class CursorRow:
    feed_id: str
    watermark: str
    tiebreak: str
    records_committed: int
    updated_at: str
    generation: int = 0

    @property
    def position(self) -> str:
        return f"{self.watermark}#{self.tiebreak}" if self.tiebreak else self.watermark


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce(text: str, like: Any) -> Any:
    """Parse a stored watermark back into the type of the feed's default."""
    if isinstance(like, bool) or not isinstance(like, (int, float)):
        return text
    return type(like)(text)


class CursorStore(SqliteAsyncMixin):
    """SQLite-backed cursor table.

    A cursor row is created on a feed's first sync attempt and moved only by
    :meth:`advance`, which the engine calls after the page it describes has
    been committed. Advancing never moves a watermark backwards.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        self.log = logging.getLogger(self.__class__.__name__)

    async def get(self, feed_id: str, default: Watermark) -> Watermark:
        """Last committed watermark for ``feed_id``, or ``default`` if none exists."""
        try:
            async with self._read_conn() as db:
                cursor = await db.execute(
                    "SELECT watermark, tiebreak FROM sync_cursors WHERE feed_id = ?", (feed_id,)
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreQueryError(f"Failed to read cursor for {feed_id}: {e}") from e
        if row is None:
            return default
        return Watermark(_coerce(row["watermark"], default.value), row["tiebreak"] or "")

    async def ensure(self, feed_id: str, default: Watermark) -> Watermark:
        """Create the cursor row at ``default`` if absent; return the current watermark."""
        now = _now()
        try:
            async with self._write_conn() as db:
                await db.execute(
                    """
                    INSERT OR IGNORE INTO sync_cursors
                        (feed_id, watermark, tiebreak, records_committed, created_at, updated_at)
                    VALUES (?, ?, ?, 0, ?, ?)
                    """,
                    (feed_id, str(default.value), default.tiebreak, now, now),
                )
        except aiosqlite.Error as e:
            raise StoreWriteError(f"Failed to create cursor for {feed_id}: {e}") from e
        return await self.get(feed_id, default)

    async def next_generation(self, feed_id: str, default: Watermark) -> int:
        """Generation a new snapshot run of ``feed_id`` advances under.

        The stored watermark is left as it is until the run commits its
        first page.
        """
        await self.ensure(feed_id, default)
        try:
            async with self._read_conn() as db:
                cursor = await db.execute(
                    "SELECT generation FROM sync_cursors WHERE feed_id = ?", (feed_id,)
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreQueryError(f"Failed to read cursor generation for {feed_id}: {e}") from e
        return (row["generation"] if row is not None else 0) + 1

    async def advance(
        self, feed_id: str, watermark: Watermark, committed: int = 0, *, generation: int = 0
    ) -> None:
        """Move the cursor forward after a successful commit.

        Positions are ordered by ``(generation, watermark)``, so a snapshot
        run starting over under a newer generation is still a forward move.

        Raises:
            CursorRegressionError: if the position is behind the stored one.
            StoreWriteError: if the update could not be persisted.
        """
        now = _now()
        try:
            async with self._write_conn() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        "SELECT watermark, tiebreak, generation FROM sync_cursors WHERE feed_id = ?",
                        (feed_id,),
                    )
                    row = await cursor.fetchone()
                    if row is not None:
                        current = Watermark(_coerce(row[0], watermark.value), row[1] or "")
                        if generation < row[2] or (generation == row[2] and watermark < current):
                            raise CursorRegressionError(feed_id, current, watermark)
                    await db.execute(
                        """
                        INSERT INTO sync_cursors
                            (feed_id, watermark, tiebreak, records_committed, generation,
                             created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(feed_id) DO UPDATE SET
                            watermark = excluded.watermark,
                            tiebreak = excluded.tiebreak,
                            records_committed = records_committed + excluded.records_committed,
                            generation = excluded.generation,
                            updated_at = excluded.updated_at
                        """,
                        (
                            feed_id,
                            str(watermark.value),
                            watermark.tiebreak,
                            committed,
                            generation,
                            now,
                            now,
                        ),
                    )
                    await db.execute("COMMIT")
                except BaseException:
                    if db.in_transaction:
                        await db.execute("ROLLBACK")
                    raise
        except aiosqlite.Error as e:
            raise StoreWriteError(f"Failed to advance cursor for {feed_id}: {e}") from e
        self.log.debug(f"{feed_id}: cursor advanced to {watermark}")

    async def reset(self, feed_id: str, to: Optional[Watermark] = None) -> None:
        """Rewind a cursor.

        With ``to`` the watermark is set explicitly (bypassing the monotonic
        check); without it the row is deleted so the feed restarts from its
        default on the next run.
        """
        try:
            async with self._write_conn() as db:
                if to is None:
                    await db.execute("DELETE FROM sync_cursors WHERE feed_id = ?", (feed_id,))
                else:
                    now = _now()
                    await db.execute(
                        """
                        INSERT INTO sync_cursors
                            (feed_id, watermark, tiebreak, records_committed, created_at, updated_at)
                        VALUES (?, ?, ?, 0, ?, ?)
                        ON CONFLICT(feed_id) DO UPDATE SET
                            watermark = excluded.watermark,
                            tiebreak = excluded.tiebreak,
                            updated_at = excluded.updated_at
                        """,
                        (feed_id, str(to.value), to.tiebreak, now, now),
                    )
        except aiosqlite.Error as e:
            raise StoreWriteError(f"Failed to reset cursor for {feed_id}: {e}") from e
        self.log.info(f"{feed_id}: cursor reset to {to if to is not None else 'default'}")

    async def list(self) -> List[CursorRow]:
        try:
            async with self._read_conn() as db:
                cursor = await db.execute(
                    "SELECT feed_id, watermark, tiebreak, records_committed, updated_at, generation "
                    "FROM sync_cursors ORDER BY feed_id"
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreQueryError(f"Failed to list cursors: {e}") from e
        return [CursorRow(*tuple(row)) for row in rows]
