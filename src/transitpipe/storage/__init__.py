# SPDX-License-Identifier: Apache-2.0
"""Local SQLite storage."""

from .local_store import LocalStore

__all__ = ["LocalStore"]
