# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tests.fakes import otp_event, passup
from transitpipe.aggregation.queries import (
    busiest_stops,
    otp_route_summary,
    passups_by_month,
    ridership_by_season,
    season_of,
)
from transitpipe.sync.feeds import FEEDS


async def seed(store, feed_id, records):
    spec = FEEDS[feed_id]
    await store.write_batch(spec, [spec.normalize(r) for r in records])


def ridership(stop, boardings, alightings, season="Fall 2024", start="2024-09-01T00:00:00.000", day_type="Weekday"):
    return {
        "schedule_period_name": season,
        "schedule_period_start_date": start,
        "day_type": day_type,
        "time_period": "AM Peak",
        "route_number": "11",
        "stop_number": str(stop),
        "average_boardings": boardings,
        "average_alightings": alightings,
    }


@pytest.mark.parametrize(
    "date, season",
    [("2025-01-15", "Winter"), ("2025-04-01", "Spring"), ("2025-07-01", "Summer"), ("2024-09-01", "Autumn"), ("2024-12-31", "Winter")],
)
def test_season_of(date, season):
    assert season_of(date) == season


class TestOtpRouteSummary:
    @pytest.mark.asyncio
    async def test_threshold_boundaries(self, store):
        # 0, 180 and -60 are on time; 181 is late; -61 is early
        await seed(
            store,
            "otp",
            [
                otp_event(1, 0),
                otp_event(2, 180),
                otp_event(3, 181),
                otp_event(4, -60),
                otp_event(5, -61),
                otp_event(6, 500, route="16"),
            ],
        )
        await seed(store, "routes", [{"key": "11", "name": "Portage", "badge-style": {"background-color": "#0060a9"}}])

        summary = await otp_route_summary(store)

        assert summary["total_trips"] == 6
        assert summary["overall_otp_percentage"] == 50.0
        route_11, route_16 = summary["routes"]
        assert (route_11["on_time_trips"], route_11["late_trips"], route_11["early_trips"]) == (3, 1, 1)
        assert route_11["otp_percentage"] == 60.0
        assert route_11["route_name"] == "Portage"
        assert route_11["color"] == "#0060a9"
        assert route_16["otp_percentage"] == 0.0
        assert route_16["route_name"] is None

    @pytest.mark.asyncio
    async def test_route_filter(self, store):
        await seed(store, "otp", [otp_event(1, 0), otp_event(2, 500, route="16")])

        summary = await otp_route_summary(store, route="16")

        assert summary["total_trips"] == 1
        assert [r["route_number"] for r in summary["routes"]] == ["16"]

    @pytest.mark.asyncio
    async def test_no_trips_gives_undefined_percentage(self, store):
        await seed(store, "otp", [otp_event(1, 0)])

        summary = await otp_route_summary(
            store, lookback_days=5, now=datetime(2025, 7, 10, tzinfo=timezone.utc)
        )

        assert summary == {
            "total_trips": 0,
            "overall_otp_percentage": None,
            "since": "2025-07-05T00:00:00.000",
            "routes": [],
        }


@pytest.mark.asyncio
async def test_passups_by_month_splits_types(store):
    await seed(
        store,
        "passups",
        [
            passup(1),
            passup(2, pass_up_type="Wheelchair User Pass-Up"),
            passup(3, time="2025-08-02T10:00:00.000"),
            passup(4, route_number="16"),
        ],
    )

    months = await passups_by_month(store, route="11")

    assert months == [
        {"month": "2025-07", "total_passups": 2, "full_bus_total": 1, "wheelchair_total": 1},
        {"month": "2025-08", "total_passups": 1, "full_bus_total": 1, "wheelchair_total": 0},
    ]


@pytest.mark.asyncio
async def test_empty_store_gives_empty_lists(store):
    assert await passups_by_month(store) == []
    assert await ridership_by_season(store) == []
    assert await busiest_stops(store) == []


@pytest.mark.asyncio
async def test_ridership_by_season_totals(store):
    await seed(
        store,
        "ridership",
        [
            ridership(10001, 10.5, 1),
            ridership(10002, 4.5, 2),
            ridership(10001, 3, 3, day_type="Sunday"),
        ],
    )

    rows = await ridership_by_season(store)

    sunday, weekday = rows
    assert weekday["season_name"] == "Fall 2024"
    assert weekday["season"] == "Autumn"
    assert weekday["stops"] == 2
    assert weekday["daily_boardings"] == 15.0
    assert weekday["daily_alightings"] == 3.0
    assert weekday["daily_total"] == 18.0
    assert sunday["day_type"] == "Sunday"


class TestBusiestStops:
    @pytest.mark.asyncio
    async def test_ranked_with_stop_metadata(self, store):
        await seed(store, "ridership", [ridership(10001, 10.5, 1), ridership(10002, 4.5, 2)])
        await seed(
            store,
            "stops",
            [{"key": 10001, "name": "Portage @ Main", "centre": {"geographic": {"latitude": 49.89, "longitude": -97.13}}}],
        )

        top, second = await busiest_stops(store)

        assert top["stop_number"] == "10001"
        assert top["stop_name"] == "Portage @ Main"
        assert top["latitude"] == 49.89
        assert second["stop_name"] is None

    @pytest.mark.asyncio
    async def test_limit_and_season_filter(self, store):
        await seed(
            store,
            "ridership",
            [ridership(10001, 10, 1), ridership(10002, 20, 2), ridership(10003, 50, 0, season="Winter 2025", start="2025-01-05T00:00:00.000")],
        )

        rows = await busiest_stops(store, limit=1, season_name="Fall 2024")

        assert [r["stop_number"] for r in rows] == ["10002"]

    @pytest.mark.asyncio
    async def test_limit_must_be_positive(self, store):
        with pytest.raises(ValueError):
            await busiest_stops(store, limit=0)
