# SPDX-License-Identifier: Apache-2.0
"""transitpipe package initialization."""

__version__ = "0.1.0"

__all__ = [
    "aggregation",
    "cache",
    "cli",
    "config",
    "storage",
    "sync",
    "__version__",
]
