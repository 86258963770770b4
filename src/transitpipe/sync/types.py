# SPDX-License-Identifier: Apache-2.0
"""Value objects shared by the sync engine, its sources and the stores."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

RawRecord = Mapping[str, Any]

# Socrata system field carrying a stable per-row identifier
TIEBREAK_FIELD = ":id"


@dataclass(frozen=True, order=True)
class Watermark:
    """Totally ordered ingestion position: ordering-field value, then tie-break.

    Records sharing one ordering value are told apart by ``tiebreak`` so a
    page boundary falling inside a run of equal values neither skips nor
    repeats records.
    """

    value: Any
    tiebreak: str = ""

    def __str__(self) -> str:
        return f"{self.value}#{self.tiebreak}" if self.tiebreak else str(self.value)


class SyncState(str, Enum):
    """States of one sync run."""

    IDLE = "idle"
    FETCHING = "fetching"
    COMMITTING = "committing"
    ADVANCING = "advancing"
    BACKOFF = "backoff"
    DRAINED = "drained"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.DRAINED, SyncState.FAILED)


class WriteMode(str, Enum):
    """How a feed's validated records are applied to its table."""

    APPEND = "append"  # no business key; plain INSERT
    INSERT_IGNORE = "insert_ignore"  # first write of a business key wins
    UPSERT = "upsert"  # latest write of a business key wins


@dataclass(frozen=True)
class WriteResult:
    """Outcome of applying one page to the local store."""

    inserted: int
    duplicates: int

    @property
    def applied(self) -> int:
        return self.inserted + self.duplicates


@dataclass
class SyncReport:
    """Summary of one sync run for a feed."""

    feed_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    state: SyncState = SyncState.IDLE
    start_watermark: Optional[Watermark] = None
    end_watermark: Optional[Watermark] = None
    pages: int = 0
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    retries: int = 0
    rejected_by_reason: Counter = field(default_factory=Counter)
    error: Optional[str] = None

    @property
    def rejected(self) -> int:
        return sum(self.rejected_by_reason.values())

    @property
    def succeeded(self) -> bool:
        return self.state == SyncState.DRAINED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "start_watermark": str(self.start_watermark) if self.start_watermark else None,
            "end_watermark": str(self.end_watermark) if self.end_watermark else None,
            "pages": self.pages,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "rejected": self.rejected,
            "rejected_by_reason": dict(self.rejected_by_reason),
            "retries": self.retries,
            "error": self.error,
        }
