# SPDX-License-Identifier: Apache-2.0
"""Fake sources and failure-injecting stores for testing."""

from __future__ import annotations

from .sources import (
    CrashingCursorStore,
    FakeFeedSource,
    FlakyStore,
    SimulatedCrash,
    otp_event,
    passup,
)

__all__ = [
    "CrashingCursorStore",
    "FakeFeedSource",
    "FlakyStore",
    "SimulatedCrash",
    "otp_event",
    "passup",
]
