# SPDX-License-Identifier: Apache-2.0
"""Data query commands."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import typer

from transitpipe.aggregation.queries import AGGREGATES
from transitpipe.errors import TransitPipeError

from .utils import CONFIG_OPTION, DATABASE_OPTION, load_cli_config


def _print_frame(df: pd.DataFrame, csv: bool, limit: int) -> None:
    if df.empty:
        print("Query returned no results")
        return

    if csv:
        df.to_csv(sys.stdout, index=False)
        return

    if len(df) > limit:
        print(f"🔍 Showing first {limit} of {len(df)} rows:")
        display_df = df.head(limit)
    else:
        display_df = df
    print(display_df.to_markdown(index=False, tablefmt="grid"))
    if len(df) > limit:
        print(f"\n... {len(df) - limit} more rows")


def query(
    sql: str = typer.Argument(..., help="Read-only SQL against the local store"),
    config: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    csv: bool = typer.Option(False, "--csv", help="Output CSV to stdout"),
    limit: int = typer.Option(50, "--limit", "-l", help="Limit number of rows in table output"),
):
    """Run an ad-hoc read-only query on the local store.

    Tables: otp_records, passup_records, ridership_records, transit_routes,
    transit_stops, sync_cursors, sync_runs

    Examples:
        transitpipe query "SELECT route_number, COUNT(*) FROM otp_records GROUP BY 1"
        transitpipe query "SELECT * FROM passup_records ORDER BY time DESC LIMIT 20" --csv
    """
    from transitpipe.storage.local_store import LocalStore

    cfg = load_cli_config(config, database)
    store = LocalStore(cfg.database_path)

    async def _run() -> List[Dict[str, Any]]:
        await store.initialize()
        return await store.fetch_all(sql)

    try:
        rows = asyncio.run(_run())
    except TransitPipeError as e:
        print(f"❌ Query failed: {e}")
        raise typer.Exit(1) from e

    _print_frame(pd.DataFrame(rows), csv, limit)


def summary(
    aggregate: str = typer.Argument(..., help=f"One of: {', '.join(AGGREGATES)}"),
    route: Optional[str] = typer.Option(None, "--route", "-r", help="Restrict to one route"),
    lookback_days: Optional[int] = typer.Option(
        None, "--lookback-days", help="otp_route_summary: only trips in the last N days"
    ),
    top: int = typer.Option(10, "--top", help="busiest_stops: number of stops"),
    season: Optional[str] = typer.Option(
        None, "--season", help="busiest_stops: schedule period name"
    ),
    config: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    csv: bool = typer.Option(False, "--csv", help="Output CSV to stdout"),
    limit: int = typer.Option(50, "--limit", "-l", help="Limit number of rows in table output"),
):
    """Print a precomputed aggregate.

    Examples:
        transitpipe summary otp_route_summary --lookback-days 30
        transitpipe summary busiest_stops --route 11 --top 5
    """
    from transitpipe.runtime import Runtime

    if aggregate not in AGGREGATES:
        print(f"❌ Unknown aggregate: {aggregate}")
        print(f"Valid aggregates: {', '.join(AGGREGATES)}")
        raise typer.Exit(2)

    params: Dict[str, Any] = {"route": route}
    if aggregate == "otp_route_summary":
        params["lookback_days"] = lookback_days
    elif aggregate == "busiest_stops":
        params.update(limit=top, season_name=season)

    cfg = load_cli_config(config, database)

    async def _run() -> Any:
        async with Runtime(cfg) as runtime:
            return await runtime.aggregates.get(aggregate, **params)

    try:
        result = asyncio.run(_run())
    except TransitPipeError as e:
        print(f"❌ Summary failed: {e}")
        raise typer.Exit(1) from e

    if aggregate == "otp_route_summary":
        overall = result["overall_otp_percentage"]
        if not csv:
            overall_text = f"{overall}%" if overall is not None else "n/a"
            print(f"Overall on-time performance: {overall_text} over {result['total_trips']} trips")
        result = result["routes"]
    _print_frame(pd.DataFrame(result), csv, limit)
