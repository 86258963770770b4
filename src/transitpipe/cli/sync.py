# SPDX-License-Identifier: Apache-2.0
"""Sync, status and cursor commands."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from transitpipe.errors import TransitPipeError
from transitpipe.sync.feeds import FEEDS
from transitpipe.sync.types import SyncReport

from .utils import CONFIG_OPTION, DATABASE_OPTION, LOG_LEVEL_OPTION, load_cli_config, setup_logging

console = Console()


def _check_feeds(feeds: List[str]) -> None:
    unknown = [f for f in feeds if f not in FEEDS]
    if unknown:
        console.print(f"❌ Unknown feed(s): {', '.join(unknown)}", style="red")
        console.print(f"Valid feeds: {', '.join(FEEDS)}")
        raise typer.Exit(2)


def _report_table(reports: Dict[str, SyncReport]) -> Table:
    table = Table(title="Sync results")
    for column in ("Feed", "State", "Pages", "Inserted", "Duplicates", "Rejected", "Retries", "Watermark"):
        table.add_column(column)
    for feed_id, report in reports.items():
        style = "green" if report.succeeded else "red"
        table.add_row(
            feed_id,
            f"[{style}]{report.state.value}[/{style}]",
            str(report.pages),
            str(report.inserted),
            str(report.duplicates),
            str(report.rejected),
            str(report.retries),
            str(report.end_watermark) if report.end_watermark else "-",
        )
    return table


def sync(
    feed: Optional[List[str]] = typer.Option(
        None, "--feed", "-f", help="Feed to sync (repeatable; default: all enabled feeds)"
    ),
    config: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Expose Prometheus metrics on this port while syncing"
    ),
):
    """Pull new records from the remote feeds into the local store.

    Examples:
        transitpipe sync
        transitpipe sync --feed otp --feed passups
        transitpipe sync -c config.yaml --metrics-port 8000
    """
    from transitpipe.metrics import start_metrics_server
    from transitpipe.runtime import Runtime

    setup_logging(log_level)
    cfg = load_cli_config(config, database)
    feed_ids = list(feed) if feed else cfg.enabled_feeds()
    _check_feeds(feed_ids)

    port = metrics_port or (cfg.metrics.port if cfg.metrics.enabled else None)
    if port:
        start_metrics_server(port)

    async def _run() -> Dict[str, SyncReport]:
        async with Runtime(cfg) as runtime:
            return await runtime.sync(feed_ids)

    try:
        reports = asyncio.run(_run())
    except TransitPipeError as e:
        console.print(f"❌ Sync failed: {e}", style="red")
        raise typer.Exit(1) from e

    console.print(_report_table(reports))
    failed = [r for r in reports.values() if not r.succeeded]
    for report in failed:
        console.print(f"❌ {report.feed_id}: {report.error}", style="red")
    if failed:
        raise typer.Exit(1)


def status(
    config: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
):
    """Show row counts, cursor positions and the last run of every feed."""
    from transitpipe.storage.local_store import LocalStore
    from transitpipe.sync.cursor import CursorStore

    cfg = load_cli_config(config, database)
    store = LocalStore(cfg.database_path)
    cursors = CursorStore(cfg.database_path)

    async def _collect():
        await store.initialize()
        counts = await store.table_counts()
        positions = {row.feed_id: row for row in await cursors.list()}
        last_runs = {}
        for feed_id in FEEDS:
            runs = await store.recent_runs(feed_id, limit=1)
            last_runs[feed_id] = runs[0] if runs else None
        return counts, positions, last_runs

    try:
        counts, positions, last_runs = asyncio.run(_collect())
    except TransitPipeError as e:
        console.print(f"❌ Status failed: {e}", style="red")
        raise typer.Exit(1) from e

    table = Table(title=f"transitpipe status ({cfg.database_path})")
    for column in ("Feed", "Rows", "Watermark", "Committed", "Cursor updated", "Last run"):
        table.add_column(column)
    for feed_id in FEEDS:
        cursor = positions.get(feed_id)
        run = last_runs[feed_id]
        table.add_row(
            feed_id,
            str(counts[feed_id]),
            cursor.position if cursor else "-",
            str(cursor.records_committed) if cursor else "-",
            cursor.updated_at if cursor else "-",
            f"{run['state']} at {run['finished_at']}" if run else "never",
        )
    console.print(table)


def reset_cursor(
    feed: str = typer.Argument(..., help="Feed whose cursor to reset"),
    config: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Forget a feed's position so the next sync starts from its initial watermark.

    Keyed feeds re-apply idempotently; the append-only otp feed will store
    every record again.
    """
    from transitpipe.storage.local_store import LocalStore
    from transitpipe.sync.cursor import CursorStore

    _check_feeds([feed])
    cfg = load_cli_config(config, database)
    if not yes:
        typer.confirm(f"Reset cursor for '{feed}'?", abort=True)

    async def _reset() -> None:
        await LocalStore(cfg.database_path).initialize()
        await CursorStore(cfg.database_path).reset(feed)

    try:
        asyncio.run(_reset())
    except TransitPipeError as e:
        console.print(f"❌ Reset failed: {e}", style="red")
        raise typer.Exit(1) from e
    console.print(f"✅ Cursor for {feed} reset")
