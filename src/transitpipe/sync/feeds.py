# SPDX-License-Identifier: Apache-2.0
"""Feed definitions: tables, business keys, validation models and ordering.

Each feed is described by a :class:`FeedSpec`. The sync engine is generic;
everything feed-specific (what a valid record looks like, which fields form
its business key, how it is written) lives here.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from transitpipe.errors import RecordValidationError

from .types import TIEBREAK_FIELD, RawRecord, Watermark, WriteMode

# Primary Transit Network launch; event feeds start here when no cursor exists
NETWORK_LAUNCH = "2025-06-29T00:00:00.000"
RIDERSHIP_EPOCH = "2020-01-01T00:00:00.000"

DEFAULT_ROUTE_COLOR = "#334155"
DEFAULT_ROUTE_TEXT_COLOR = "#ffffff"


class FeedRecord(BaseModel):
    """Base for per-feed validation models."""

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=False)


def _truncate_to_int(v: Any) -> Any:
    # Feed values arrive as strings such as "-42" or "17.0"
    if isinstance(v, str):
        v = float(v.strip())
    if isinstance(v, float):
        if not math.isfinite(v):
            raise ValueError("must be a finite number")
        return int(v)
    return v


class OtpRecord(FeedRecord):
    route_number: str = Field(..., min_length=1)
    deviation: int
    scheduled_time: str = Field(..., min_length=1)
    stop_number: Optional[str] = None
    day_type: Optional[str] = None
    source_row_id: Optional[str] = Field(default=None, alias=TIEBREAK_FIELD)

    @field_validator("deviation", mode="before")
    @classmethod
    def parse_deviation(cls, v: Any) -> Any:
        return _truncate_to_int(v)


class PassupRecord(FeedRecord):
    pass_up_id: str = Field(..., min_length=1)
    pass_up_type: Optional[str] = None
    time: str = Field(..., min_length=1)
    route_number: Optional[str] = None
    route_destination: Optional[str] = None
    location: Optional[str] = None

    @field_validator("location", mode="before")
    @classmethod
    def serialize_location(cls, v: Any) -> Any:
        if isinstance(v, (dict, list)):
            return json.dumps(v, sort_keys=True)
        return v


class RidershipRecord(FeedRecord):
    schedule_period_name: str = Field(..., min_length=1)
    schedule_period_start_date: str = Field(..., min_length=1)
    day_type: str = Field(..., min_length=1)
    time_period: str = Field(..., min_length=1)
    route_number: str = Field(..., min_length=1)
    stop_number: str = Field(..., min_length=1)
    average_boardings: float = 0.0
    average_alightings: float = 0.0

    @field_validator("average_boardings", "average_alightings", mode="before")
    @classmethod
    def default_missing_counts(cls, v: Any) -> Any:
        return 0.0 if v in (None, "") else v

    @property
    def unique_key(self) -> str:
        return (
            f"{self.schedule_period_name}-{self.route_number}-{self.stop_number}"
            f"-{self.day_type}-{self.time_period}"
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "unique_key": self.unique_key,
            "service_date": self.schedule_period_start_date,
            "season_name": self.schedule_period_name,
            "day_type": self.day_type,
            "time_period": self.time_period,
            "route_number": self.route_number,
            "stop_number": self.stop_number,
            "average_boardings": self.average_boardings,
            "average_alightings": self.average_alightings,
        }


def _hex_color(value: Optional[str], default: str) -> str:
    color = (value or default).strip()
    return color if color.startswith("#") else f"#{color}"


class RouteRecord(FeedRecord):
    key: str = Field(..., min_length=1)
    name: Optional[str] = None
    badge_style: Dict[str, Optional[str]] = Field(default_factory=dict, alias="badge-style")

    @field_validator("badge_style", mode="before")
    @classmethod
    def default_badge_style(cls, v: Any) -> Any:
        return v or {}

    def to_row(self) -> Dict[str, Any]:
        return {
            "route_number": self.key,
            "route_name": self.name,
            "color": _hex_color(self.badge_style.get("background-color"), DEFAULT_ROUTE_COLOR),
            "text_color": _hex_color(self.badge_style.get("color"), DEFAULT_ROUTE_TEXT_COLOR),
        }


class _Geographic(BaseModel):
    latitude: float
    longitude: float


class _Centre(BaseModel):
    geographic: _Geographic


class StopRecord(FeedRecord):
    key: int
    name: Optional[str] = None
    centre: _Centre

    def to_row(self) -> Dict[str, Any]:
        return {
            "stop_number": self.key,
            "stop_name": self.name,
            "latitude": self.centre.geographic.latitude,
            "longitude": self.centre.geographic.longitude,
        }


@dataclass(frozen=True)
class FeedSpec:
    """Everything the generic sync engine needs to know about one feed."""

    feed_id: str
    table: str
    columns: Tuple[str, ...]
    model: Type[FeedRecord]
    write_mode: WriteMode
    ordering_field: str
    initial_watermark: Any
    key_columns: Tuple[str, ...] = ()
    resource_id: Optional[str] = None
    page_size: int = 5000
    snapshot: bool = False
    requires_api_key: bool = False
    watermark_parser: Callable[[Any], Any] = str
    description: str = ""

    def __post_init__(self):
        if self.write_mode != WriteMode.APPEND and not self.key_columns:
            raise ValueError(f"{self.feed_id}: {self.write_mode.value} requires key_columns")
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")

    @property
    def default_watermark(self) -> Watermark:
        return Watermark(self.watermark_parser(self.initial_watermark))

    def with_overrides(self, **overrides: Any) -> FeedSpec:
        """Copy of this spec with non-None overrides applied."""
        from dataclasses import replace

        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def watermark_of(self, raw: RawRecord) -> Watermark:
        """Position of a raw record in the feed's ordering.

        Raises:
            KeyError: the ordering field is absent.
            ValueError: the ordering value cannot be parsed.
        """
        value = raw[self.ordering_field]
        if value is None or value == "":
            raise ValueError(f"empty {self.ordering_field}")
        return Watermark(self.watermark_parser(value), str(raw.get(TIEBREAK_FIELD) or ""))

    def normalize(self, raw: RawRecord) -> Dict[str, Any]:
        """Validate a raw record and map it onto the table's columns.

        Raises:
            RecordValidationError: with a short ``reason`` suitable as a metric label.
        """
        if not isinstance(raw, dict):
            raise RecordValidationError("not_an_object", type(raw).__name__)
        try:
            record = self.model.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(part) for part in first.get("loc", ())) or "record"
            raise RecordValidationError(
                f"{first.get('type', 'invalid')}:{field_name}", first.get("msg", "")
            ) from e
        try:
            row = record.to_row()
        except (ValueError, TypeError, AttributeError) as e:
            raise RecordValidationError(f"invalid:{self.model.__name__}", str(e)) from e
        return {column: row.get(column) for column in self.columns}

    def business_key(self, row: Dict[str, Any]) -> Optional[Tuple[Any, ...]]:
        if not self.key_columns:
            return None
        return tuple(row[column] for column in self.key_columns)


OTP = FeedSpec(
    feed_id="otp",
    table="otp_records",
    columns=("route_number", "deviation", "scheduled_time", "stop_number", "day_type", "source_row_id"),
    model=OtpRecord,
    write_mode=WriteMode.APPEND,
    ordering_field="scheduled_time",
    initial_watermark=NETWORK_LAUNCH,
    resource_id="gp3k-am4u",
    page_size=50000,
    description="Recent transit on-time performance (append-only)",
)

PASSUPS = FeedSpec(
    feed_id="passups",
    table="passup_records",
    columns=("pass_up_id", "pass_up_type", "time", "route_number", "route_destination", "location"),
    model=PassupRecord,
    write_mode=WriteMode.INSERT_IGNORE,
    key_columns=("pass_up_id",),
    ordering_field="time",
    initial_watermark=NETWORK_LAUNCH,
    resource_id="mer2-irmb",
    description="Transit pass-ups",
)

RIDERSHIP = FeedSpec(
    feed_id="ridership",
    table="ridership_records",
    columns=(
        "unique_key",
        "service_date",
        "season_name",
        "day_type",
        "time_period",
        "route_number",
        "stop_number",
        "average_boardings",
        "average_alightings",
    ),
    model=RidershipRecord,
    write_mode=WriteMode.INSERT_IGNORE,
    key_columns=("unique_key",),
    ordering_field="schedule_period_start_date",
    initial_watermark=RIDERSHIP_EPOCH,
    resource_id="bv6q-du26",
    description="Estimated daily passenger activity",
)

ROUTES = FeedSpec(
    feed_id="routes",
    table="transit_routes",
    columns=("route_number", "route_name", "color", "text_color"),
    model=RouteRecord,
    write_mode=WriteMode.UPSERT,
    key_columns=("route_number",),
    ordering_field="key",
    initial_watermark="",
    page_size=500,
    snapshot=True,
    requires_api_key=True,
    description="Route names and badge colours",
)

STOPS = FeedSpec(
    feed_id="stops",
    table="transit_stops",
    columns=("stop_number", "stop_name", "latitude", "longitude"),
    model=StopRecord,
    write_mode=WriteMode.UPSERT,
    key_columns=("stop_number",),
    ordering_field="key",
    initial_watermark=0,
    page_size=2000,
    snapshot=True,
    requires_api_key=True,
    watermark_parser=int,
    description="Stop names and locations",
)

FEEDS: Dict[str, FeedSpec] = {spec.feed_id: spec for spec in (OTP, PASSUPS, RIDERSHIP, ROUTES, STOPS)}


def get_feed(feed_id: str) -> FeedSpec:
    try:
        return FEEDS[feed_id]
    except KeyError:
        raise KeyError(f"Unknown feed: {feed_id}. Valid feeds: {sorted(FEEDS)}") from None
