# SPDX-License-Identifier: Apache-2.0
"""Read-side aggregates over the local store."""

from .queries import (
    AGGREGATES,
    busiest_stops,
    otp_route_summary,
    passups_by_month,
    ridership_by_season,
)
from .service import AggregateService

__all__ = [
    "AGGREGATES",
    "AggregateService",
    "busiest_stops",
    "otp_route_summary",
    "passups_by_month",
    "ridership_by_season",
]
