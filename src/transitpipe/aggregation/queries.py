# SPDX-License-Identifier: Apache-2.0
"""Aggregate computations over the local store.

Plain functions taking a :class:`LocalStore`; caching is layered on top by
:class:`~transitpipe.aggregation.service.AggregateService`. A failed query
raises :class:`StoreQueryError`; "no rows" is an empty summary, never an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from transitpipe.storage.local_store import LocalStore

# Deviation thresholds in seconds: later than 3 minutes is late, more than 1 minute early is early
LATE_THRESHOLD = 180
EARLY_THRESHOLD = -60

# Matches the feed's scheduled_time format
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.000"


def _percentage(part: int, whole: int) -> Optional[float]:
    if not whole:
        return None
    return round(part / whole * 100, 2)


def season_of(date_string: str) -> str:
    """Meteorological season of an ISO date (``YYYY-MM...``)."""
    month = int(date_string[5:7])
    if 3 <= month <= 5:
        return "Spring"
    if 6 <= month <= 8:
        return "Summer"
    if 9 <= month <= 11:
        return "Autumn"
    return "Winter"


async def otp_route_summary(
    store: LocalStore,
    route: Optional[str] = None,
    lookback_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """On-time performance per route.

    A trip is on time when ``EARLY_THRESHOLD <= deviation <= LATE_THRESHOLD``.
    Percentages are ``None`` when there are no trips to divide by.
    """
    since = None
    if lookback_days is not None:
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=lookback_days)).strftime(TIMESTAMP_FORMAT)

    rows = await store.fetch_all(
        """
        SELECT o.route_number AS route_number,
               MAX(r.route_name) AS route_name,
               MAX(r.color) AS color,
               MAX(r.text_color) AS text_color,
               COUNT(*) AS total_trips,
               SUM(CASE WHEN o.deviation BETWEEN ? AND ? THEN 1 ELSE 0 END) AS on_time_trips,
               SUM(CASE WHEN o.deviation > ? THEN 1 ELSE 0 END) AS late_trips,
               SUM(CASE WHEN o.deviation < ? THEN 1 ELSE 0 END) AS early_trips
        FROM otp_records o
        LEFT JOIN transit_routes r ON r.route_number = o.route_number
        WHERE (? IS NULL OR o.route_number = ?)
          AND (? IS NULL OR o.scheduled_time >= ?)
        GROUP BY o.route_number
        ORDER BY o.route_number
        """,
        (
            EARLY_THRESHOLD,
            LATE_THRESHOLD,
            LATE_THRESHOLD,
            EARLY_THRESHOLD,
            route,
            route,
            since,
            since,
        ),
    )

    total = sum(row["total_trips"] for row in rows)
    on_time = sum(row["on_time_trips"] for row in rows)
    for row in rows:
        row["otp_percentage"] = _percentage(row["on_time_trips"], row["total_trips"])

    return {
        "total_trips": total,
        "overall_otp_percentage": _percentage(on_time, total),
        "since": since,
        "routes": rows,
    }


async def passups_by_month(store: LocalStore, route: Optional[str] = None) -> List[Dict[str, Any]]:
    """Monthly pass-up totals split into full-bus and wheelchair pass-ups."""
    return await store.fetch_all(
        """
        SELECT substr(time, 1, 7) AS month,
               COUNT(*) AS total_passups,
               SUM(CASE WHEN pass_up_type LIKE '%full%' THEN 1 ELSE 0 END) AS full_bus_total,
               SUM(CASE WHEN pass_up_type LIKE '%wheelchair%' THEN 1 ELSE 0 END) AS wheelchair_total
        FROM passup_records
        WHERE (? IS NULL OR route_number = ?)
        GROUP BY month
        ORDER BY month
        """,
        (route, route),
    )


async def ridership_by_season(
    store: LocalStore, route: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Estimated daily boardings and alightings per schedule period and day type."""
    rows = await store.fetch_all(
        """
        SELECT season_name,
               MIN(service_date) AS period_start,
               day_type,
               COUNT(DISTINCT stop_number) AS stops,
               ROUND(SUM(average_boardings), 2) AS daily_boardings,
               ROUND(SUM(average_alightings), 2) AS daily_alightings
        FROM ridership_records
        WHERE (? IS NULL OR route_number = ?)
        GROUP BY season_name, day_type
        ORDER BY period_start, season_name, day_type
        """,
        (route, route),
    )
    for row in rows:
        row["season"] = season_of(row["period_start"])
        row["daily_total"] = round(row["daily_boardings"] + row["daily_alightings"], 2)
    return rows


async def busiest_stops(
    store: LocalStore,
    route: Optional[str] = None,
    limit: int = 10,
    season_name: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Stops ranked by estimated boardings, with names and coordinates where known."""
    if limit < 1:
        raise ValueError("limit must be >= 1")
    return await store.fetch_all(
        """
        SELECT rr.stop_number AS stop_number,
               MAX(s.stop_name) AS stop_name,
               MAX(s.latitude) AS latitude,
               MAX(s.longitude) AS longitude,
               ROUND(SUM(rr.average_boardings), 2) AS boardings,
               ROUND(SUM(rr.average_alightings), 2) AS alightings
        FROM ridership_records rr
        LEFT JOIN transit_stops s ON s.stop_number = CAST(rr.stop_number AS INTEGER)
        WHERE (? IS NULL OR rr.route_number = ?)
          AND (? IS NULL OR rr.season_name = ?)
        GROUP BY rr.stop_number
        ORDER BY boardings DESC, rr.stop_number
        LIMIT ?
        """,
        (route, route, season_name, season_name, limit),
    )


@dataclass(frozen=True)
class AggregateDef:
    name: str
    fn: Callable[..., Awaitable[Any]]
    feeds: FrozenSet[str]
    description: str


AGGREGATES: Dict[str, AggregateDef] = {
    agg.name: agg
    for agg in (
        AggregateDef(
            "otp_route_summary",
            otp_route_summary,
            frozenset({"otp", "routes"}),
            "On-time performance by route",
        ),
        AggregateDef(
            "passups_by_month", passups_by_month, frozenset({"passups"}), "Pass-ups per month"
        ),
        AggregateDef(
            "ridership_by_season",
            ridership_by_season,
            frozenset({"ridership"}),
            "Daily ridership per schedule period",
        ),
        AggregateDef(
            "busiest_stops",
            busiest_stops,
            frozenset({"ridership", "stops"}),
            "Stops ranked by boardings",
        ),
    )
}
