# SPDX-License-Identifier: Apache-2.0
"""Incremental synchronization of remote feeds into the local store."""

from .feeds import FEEDS, FeedSpec, get_feed
from .types import SyncReport, SyncState, Watermark, WriteMode, WriteResult

__all__ = [
    "FEEDS",
    "FeedSpec",
    "get_feed",
    "SyncReport",
    "SyncState",
    "Watermark",
    "WriteMode",
    "WriteResult",
]
