# SPDX-License-Identifier: Apache-2.0
"""Database bootstrap.

Migrations run lazily, once per database path per process, when a store is
first opened, so importing the CLI for ``--help`` has no side effects.
"""

from __future__ import annotations

__all__ = ["bootstrap", "is_bootstrapped", "reset_bootstrap_state"]

import logging
import threading
from pathlib import Path
from typing import List, Set, Union

from transitpipe.migrations import apply_pending

_BOOTSTRAPPED: Set[str] = set()
_BOOTSTRAP_LOCK = threading.Lock()

logger = logging.getLogger(__name__)


def bootstrap(db_path: Union[str, Path]) -> List[str]:
    """Apply pending migrations to ``db_path`` unless already done in this process.

    Returns:
        Migration versions applied by this call.
    """
    key = str(Path(db_path).resolve())
    with _BOOTSTRAP_LOCK:
        if key in _BOOTSTRAPPED:
            return []
        applied = apply_pending(Path(db_path))
        _BOOTSTRAPPED.add(key)
    if applied:
        logger.info(f"Database {db_path} migrated to version {applied[-1]}")
    return applied


def is_bootstrapped(db_path: Union[str, Path]) -> bool:
    return str(Path(db_path).resolve()) in _BOOTSTRAPPED


def reset_bootstrap_state() -> None:
    """Forget which databases were migrated (for testing only)."""
    with _BOOTSTRAP_LOCK:
        _BOOTSTRAPPED.clear()
