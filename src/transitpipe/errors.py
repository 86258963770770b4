# SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy shared by the sync engine, the store and the read layer."""

from __future__ import annotations

from typing import Any, Optional


class TransitPipeError(Exception):
    """Base exception for all transitpipe errors."""

    pass


class ConfigurationError(TransitPipeError):
    """Invalid configuration or credentials. Fatal: the affected feed must not run."""

    def __init__(self, message: str, feed_id: Optional[str] = None):
        super().__init__(message)
        self.feed_id = feed_id


class TransientError(TransitPipeError):
    """Failure that is retried with backoff at the same cursor position."""

    pass


class TransientSourceError(TransientError):
    """Network failure, timeout, non-2xx status or malformed payload from a feed."""

    def __init__(
        self,
        message: str,
        feed_id: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.feed_id = feed_id
        self.status_code = status_code
        self.retry_after = retry_after


class StoreWriteError(TransientError):
    """A batch transaction failed and was rolled back as a whole."""

    pass


class StoreQueryError(TransitPipeError):
    """A read query against the local store failed.

    Distinct from an empty result: callers must never treat this as "no data".
    """

    pass


class CursorRegressionError(TransitPipeError):
    """Attempt to move a feed watermark backwards."""

    def __init__(self, feed_id: str, current: Any, proposed: Any):
        super().__init__(
            f"Refusing to move cursor for {feed_id} backwards: {proposed} < {current}"
        )
        self.feed_id = feed_id
        self.current = current
        self.proposed = proposed


class RecordValidationError(TransitPipeError):
    """A single raw record failed required-field checks and is skipped."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class AggregateQueryError(TransitPipeError):
    """An aggregate computation could not be completed."""

    def __init__(self, aggregate: str, cause: Exception):
        super().__init__(f"Aggregate '{aggregate}' failed: {cause}")
        self.aggregate = aggregate
        self.cause = cause


__all__ = [
    "TransitPipeError",
    "ConfigurationError",
    "TransientError",
    "TransientSourceError",
    "StoreWriteError",
    "StoreQueryError",
    "CursorRegressionError",
    "RecordValidationError",
    "AggregateQueryError",
]
