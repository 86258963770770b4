# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import dataclasses
import json

import pytest

from tests.fakes import otp_event, passup
from transitpipe.errors import RecordValidationError
from transitpipe.sync.feeds import FEEDS, RouteRecord, get_feed
from transitpipe.sync.types import Watermark, WriteMode


def test_feed_catalogue():
    assert set(FEEDS) == {"otp", "passups", "ridership", "routes", "stops"}
    assert FEEDS["otp"].write_mode == WriteMode.APPEND
    assert FEEDS["passups"].key_columns == ("pass_up_id",)
    assert FEEDS["routes"].snapshot and FEEDS["stops"].snapshot
    assert FEEDS["otp"].default_watermark == Watermark("2025-06-29T00:00:00.000")


def test_get_feed_lists_valid_feeds_on_unknown_name():
    with pytest.raises(KeyError, match="Valid feeds"):
        get_feed("trips")


def test_keyed_write_modes_need_key_columns():
    with pytest.raises(ValueError, match="requires key_columns"):
        FEEDS["passups"].with_overrides(key_columns=())


def test_overrides_skip_none_values():
    spec = FEEDS["otp"].with_overrides(page_size=10, resource_id=None)
    assert spec.page_size == 10
    assert spec.resource_id == "gp3k-am4u"


class TestWatermarkOf:
    def test_uses_ordering_field_and_row_id(self):
        assert FEEDS["passups"].watermark_of(passup(3)) == Watermark("2025-07-01T00:00:03.000", "row-0003")

    def test_stop_keys_compare_numerically(self):
        spec = FEEDS["stops"]
        assert spec.watermark_of({"key": "9"}) < spec.watermark_of({"key": "10"})

    def test_missing_ordering_field(self):
        with pytest.raises(KeyError):
            FEEDS["passups"].watermark_of({"pass_up_id": "1"})

    def test_empty_ordering_value(self):
        with pytest.raises(ValueError):
            FEEDS["passups"].watermark_of({"time": ""})


class TestNormalize:
    def test_otp_deviation_truncated_from_string(self):
        row = FEEDS["otp"].normalize(otp_event(1, deviation="-42.7"))

        assert row["deviation"] == -42
        assert row["route_number"] == "11"
        assert row["source_row_id"] == "row-0001"

    def test_otp_non_numeric_deviation_rejected(self):
        with pytest.raises(RecordValidationError) as exc:
            FEEDS["otp"].normalize(otp_event(1, deviation="late"))
        assert exc.value.reason == "value_error:deviation"

    def test_numeric_route_number_coerced_to_text(self):
        row = FEEDS["otp"].normalize(otp_event(1, route=16))
        assert row["route_number"] == "16"

    def test_passup_location_stored_as_json(self):
        location = {"type": "Point", "coordinates": [-97.1, 49.9]}
        row = FEEDS["passups"].normalize(passup(1, location=location))

        assert json.loads(row["location"]) == location

    def test_passup_blank_id_rejected(self):
        with pytest.raises(RecordValidationError) as exc:
            FEEDS["passups"].normalize(passup(1, pass_up_id="   "))
        assert exc.value.reason == "string_too_short:pass_up_id"

    def test_passup_missing_id_rejected(self):
        record = passup(1)
        del record["pass_up_id"]

        with pytest.raises(RecordValidationError) as exc:
            FEEDS["passups"].normalize(record)
        assert exc.value.reason == "missing:pass_up_id"

    def test_non_object_rejected(self):
        with pytest.raises(RecordValidationError) as exc:
            FEEDS["passups"].normalize(["not", "a", "record"])
        assert exc.value.reason == "not_an_object"

    def test_extra_fields_dropped(self):
        row = FEEDS["passups"].normalize(passup(1, unexpected="x"))
        assert set(row) == set(FEEDS["passups"].columns)

    def test_ridership_business_key_and_defaults(self):
        raw = {
            "schedule_period_name": "Fall 2024",
            "schedule_period_start_date": "2024-09-01T00:00:00.000",
            "day_type": "Weekday",
            "time_period": "AM Peak",
            "route_number": "11",
            "stop_number": "10001",
            "average_boardings": "12.5",
        }
        spec = FEEDS["ridership"]
        row = spec.normalize(raw)

        assert row["unique_key"] == "Fall 2024-11-10001-Weekday-AM Peak"
        assert row["service_date"] == "2024-09-01T00:00:00.000"
        assert row["average_boardings"] == 12.5
        assert row["average_alightings"] == 0.0
        assert spec.business_key(row) == ("Fall 2024-11-10001-Weekday-AM Peak",)

    def test_route_colours_get_hash_prefix_and_defaults(self):
        spec = FEEDS["routes"]
        styled = spec.normalize({"key": "BLUE", "name": "Blue", "badge-style": {"background-color": "0060a9"}})
        plain = spec.normalize({"key": 11, "name": "Portage"})

        assert styled["color"] == "#0060a9"
        assert styled["text_color"] == "#ffffff"
        assert plain == {"route_number": "11", "route_name": "Portage", "color": "#334155", "text_color": "#ffffff"}

    def test_stop_requires_coordinates(self):
        spec = FEEDS["stops"]
        with pytest.raises(RecordValidationError) as exc:
            spec.normalize({"key": 10001, "name": "Portage @ Main"})
        assert exc.value.reason == "missing:centre"

    def test_append_feed_has_no_business_key(self):
        assert FEEDS["otp"].business_key({"route_number": "11"}) is None

    @pytest.mark.parametrize("deviation", ["1e400", "inf", "-inf", "nan", 1e400])
    def test_otp_non_finite_deviation_rejected(self, deviation):
        with pytest.raises(RecordValidationError) as exc:
            FEEDS["otp"].normalize(otp_event(1, deviation=deviation))
        assert exc.value.reason == "value_error:deviation"

    def test_route_colour_of_wrong_type_rejected(self):
        with pytest.raises(RecordValidationError) as exc:
            FEEDS["routes"].normalize({"key": "11", "badge-style": {"background-color": ["0060a9"]}})
        assert exc.value.reason.startswith("string_type:")
        assert "background-color" in exc.value.reason

    def test_row_mapping_failure_rejected(self):
        class UnmappableRoute(RouteRecord):
            def to_row(self):
                raise AttributeError("'int' object has no attribute 'strip'")

        spec = dataclasses.replace(FEEDS["routes"], model=UnmappableRoute)

        with pytest.raises(RecordValidationError) as exc:
            spec.normalize({"key": "11"})
        assert exc.value.reason == "invalid:UnmappableRoute"
