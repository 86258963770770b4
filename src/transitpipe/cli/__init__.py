# SPDX-License-Identifier: Apache-2.0
"""transitpipe CLI package with modular command structure."""

from __future__ import annotations

import typer

from .query import query, summary
from .sync import reset_cursor, status, sync
from .utils import migrate, optimize

app = typer.Typer(
    add_completion=False,
    help="Mirror Winnipeg Transit open data feeds into a local SQLite store and summarize them.",
)

app.command()(sync)
app.command()(status)
app.command(name="reset-cursor")(reset_cursor)
app.command()(query)
app.command()(summary)
app.command()(migrate)
app.command()(optimize)

__all__ = ["app"]


if __name__ == "__main__":
    app()
