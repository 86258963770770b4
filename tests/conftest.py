# SPDX-License-Identifier: Apache-2.0
"""Shared test fixtures for the transitpipe test suite.

FIXTURES PROVIDED:
- db_path: Fresh SQLite file per test
- store / cursors: Migrated LocalStore and CursorStore on that file
- passups_spec / otp_spec: Feed specs with small page sizes
- recorded_sleep: Stand-in for asyncio.sleep that records requested delays
"""

from __future__ import annotations

from pathlib import Path
from typing import List

import pytest
import pytest_asyncio

from transitpipe.bootstrap import reset_bootstrap_state
from transitpipe.storage.local_store import LocalStore
from transitpipe.sync.cursor import CursorStore
from transitpipe.sync.feeds import FEEDS, FeedSpec


@pytest.fixture(autouse=True)
def _fresh_bootstrap_state():
    reset_bootstrap_state()
    yield
    reset_bootstrap_state()


@pytest.fixture(autouse=True)
def _no_ambient_api_key(monkeypatch):
    monkeypatch.delenv("TRANSIT_API_KEY", raising=False)


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "transit.db"


@pytest_asyncio.fixture
async def store(db_path) -> LocalStore:
    local_store = LocalStore(db_path)
    await local_store.initialize()
    return local_store


@pytest_asyncio.fixture
async def cursors(store, db_path) -> CursorStore:
    return CursorStore(db_path)


@pytest.fixture
def passups_spec() -> FeedSpec:
    return FEEDS["passups"].with_overrides(page_size=2, initial_watermark="2025-07-01T00:00:00.000")


@pytest.fixture
def otp_spec() -> FeedSpec:
    return FEEDS["otp"].with_overrides(page_size=2, initial_watermark="2025-07-01T00:00:00.000")


class RecordedSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recorded_sleep() -> RecordedSleep:
    return RecordedSleep()
