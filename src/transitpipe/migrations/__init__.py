"""Versioned SQL migrations for the local store.

Each ``versions/NNN_name.sql`` script runs once per database, in version
order, inside its own transaction together with the ``schema_version`` row
that records it.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from collections.abc import Iterator
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "versions"

_SCHEMA_VERSION_DDL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version TEXT PRIMARY KEY,
    applied_ts INTEGER NOT NULL
)
"""


@contextlib.contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path, isolation_level=None)
    try:
        yield conn
    finally:
        conn.close()


def list_migrations() -> List[Tuple[str, Path]]:
    """Return (version, path) for every bundled migration, oldest first."""
    return [(path.stem.split("_")[0], path) for path in sorted(MIGRATIONS_DIR.glob("*.sql"))]


def get_applied_versions(db_path: Path) -> List[str]:
    with _connect(Path(db_path)) as conn:
        conn.execute(_SCHEMA_VERSION_DDL)
        return [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version")]


def apply_pending(db_path: Path) -> List[str]:
    """Bring ``db_path`` up to the latest schema version.

    Returns:
        Versions applied by this call (empty when already up to date).

    Raises:
        RuntimeError: a script failed; it is rolled back and later ones are not run.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    applied = set(get_applied_versions(db_path))
    pending = [(version, path) for version, path in list_migrations() if version not in applied]
    if not pending:
        logger.debug(f"No pending migrations for {db_path}")
        return []

    logger.info(f"Applying {len(pending)} pending migrations to {db_path}")
    with _connect(db_path) as conn:
        for version, path in pending:
            _apply(conn, version, path)
            logger.info(f"Applied migration {version}: {path.name}")
    return [version for version, _ in pending]


def _apply(conn: sqlite3.Connection, version: str, path: Path) -> None:
    script = path.read_text(encoding="utf-8")
    # executescript commits on entry, so BEGIN/COMMIT are part of the script
    try:
        conn.executescript(
            f"BEGIN;\n{script}\n"
            f"INSERT OR IGNORE INTO schema_version (version, applied_ts) "
            f"VALUES ('{version}', {int(time.time())});\nCOMMIT;"
        )
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        logger.error(f"Failed to apply migration {version}: {e}")
        raise RuntimeError(f"Migration {version} ({path.name}) failed: {e}") from e
