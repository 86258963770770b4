# SPDX-License-Identifier: Apache-2.0
"""Shared CLI helpers plus the database maintenance commands."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from transitpipe.config import TransitPipeConfig, load_config
from transitpipe.errors import TransitPipeError

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="YAML configuration file")
DATABASE_OPTION = typer.Option(None, "--database", "-d", help="SQLite database path override")
LOG_LEVEL_OPTION = typer.Option("INFO", "--log-level", help="Logging level")


def setup_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        typer.echo(f"❌ Invalid log level: {level}", err=True)
        raise typer.Exit(2)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_cli_config(config: Optional[Path], database: Optional[Path] = None) -> TransitPipeConfig:
    """Load configuration for a command, exiting with status 1 on errors."""
    try:
        cfg = load_config(config)
    except TransitPipeError as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(1) from e
    if database is not None:
        cfg = cfg.merge_overrides(database=str(database))
    return cfg


def migrate(
    config: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
):
    """Apply any pending SQLite migrations."""
    from transitpipe.migrations import apply_pending

    cfg = load_cli_config(config, database)
    try:
        applied = apply_pending(cfg.database_path)
    except RuntimeError as e:
        typer.echo(f"❌ Migration failed: {e}", err=True)
        raise typer.Exit(1) from e
    if applied:
        typer.echo(f"✅ Applied migrations: {', '.join(applied)}")
    else:
        typer.echo("✅ Migrations up-to-date")


def optimize(
    config: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    vacuum: bool = typer.Option(True, "--vacuum/--no-vacuum", help="Compact the database file"),
):
    """Refresh query planner statistics and compact the database."""
    from transitpipe.storage.local_store import LocalStore

    cfg = load_cli_config(config, database)
    store = LocalStore(cfg.database_path)

    async def _run() -> None:
        await store.initialize()
        await store.optimize(vacuum=vacuum)

    try:
        asyncio.run(_run())
    except TransitPipeError as e:
        typer.echo(f"❌ Optimize failed: {e}", err=True)
        raise typer.Exit(1) from e
    typer.echo(f"✅ Optimized {cfg.database_path}")
