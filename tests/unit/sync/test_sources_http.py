# SPDX-License-Identifier: Apache-2.0
"""HTTP feed sources exercised against httpx.MockTransport."""

from __future__ import annotations

from typing import Callable, List

import httpx
import pytest

from tests.fakes import passup
from transitpipe.config import TransitPipeConfig
from transitpipe.errors import ConfigurationError, TransientSourceError
from transitpipe.sync.feeds import FEEDS
from transitpipe.sync.rate_limit import RateLimiter
from transitpipe.sync.sources import (
    SocrataFeedSource,
    TransitApiSource,
    TransitRoutesSource,
    TransitStopsSource,
    build_source,
)
from transitpipe.sync.types import Watermark

OPEN_DATA = "https://data.example.test/resource/"
TRANSIT_API = "https://api.example.test/v4"
API_KEY = "SECRETKEY123456"


class Recorder:
    """MockTransport handler that records requests and answers via ``respond``."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FixedClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSocrataParams:
    def test_first_page_filters_on_ordering_field_only(self):
        source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA)
        params = source.build_request_params(Watermark("2025-07-01T00:00:00.000"), 100)

        assert params == {
            "$select": ":id, *",
            "$where": "time > '2025-07-01T00:00:00.000'",
            "$order": "time ASC, :id ASC",
            "$limit": "100",
        }

    def test_resume_inside_equal_timestamps_uses_row_id(self):
        source = SocrataFeedSource(FEEDS["otp"], OPEN_DATA)
        params = source.build_request_params(Watermark("2025-07-01T08:00:00.000", "row-b"), 2)

        assert params["$where"] == (
            "scheduled_time > '2025-07-01T08:00:00.000' OR "
            "(scheduled_time = '2025-07-01T08:00:00.000' AND :id > 'row-b')"
        )

    def test_quotes_are_escaped(self):
        source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA)
        params = source.build_request_params(Watermark("it's"), 1)
        assert params["$where"] == "time > 'it''s'"

    def test_requires_resource_id(self):
        with pytest.raises(ValueError):
            SocrataFeedSource(FEEDS["routes"], OPEN_DATA)


class TestSocrataFetch:
    @pytest.mark.asyncio
    async def test_fetch_page_requests_resource(self):
        handler = Recorder(lambda request: httpx.Response(200, json=[passup(1), passup(2)]))
        async with _client(handler) as client:
            source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA, client=client)
            page = await source.fetch_page(Watermark("2025-07-01T00:00:00.000"), 2)

        assert [r["pass_up_id"] for r in page] == ["1001", "1002"]
        (request,) = handler.requests
        assert request.url.path == "/resource/mer2-irmb.json"
        assert request.url.params["$limit"] == "2"
        assert request.url.params["$order"] == "time ASC, :id ASC"
        assert request.headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        handler = Recorder(lambda request: httpx.Response(503, text="unavailable"))
        async with _client(handler) as client:
            source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA, client=client)
            with pytest.raises(TransientSourceError) as exc:
                await source.fetch_page(Watermark("2025-07-01T00:00:00.000"), 2)

        assert exc.value.status_code == 503
        assert exc.value.feed_id == "passups"

    @pytest.mark.asyncio
    async def test_unauthorized_open_data_is_transient(self):
        handler = Recorder(lambda request: httpx.Response(403, text="throttled"))
        async with _client(handler) as client:
            source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA, client=client)
            with pytest.raises(TransientSourceError):
                await source.fetch_page(Watermark("2025-07-01T00:00:00.000"), 2)

    @pytest.mark.asyncio
    async def test_rate_limited_response_carries_retry_after(self):
        clock = FixedClock()
        limiter = RateLimiter(capacity=5, refill_rate=1.0, name="test", clock=clock)
        handler = Recorder(
            lambda request: httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")
        )
        async with _client(handler) as client:
            source = SocrataFeedSource(
                FEEDS["passups"], OPEN_DATA, client=client, rate_limiter=limiter
            )
            with pytest.raises(TransientSourceError) as exc:
                await source.fetch_page(Watermark("2025-07-01T00:00:00.000"), 2)

        assert exc.value.status_code == 429
        assert exc.value.retry_after == 7.0
        assert limiter.get_available_tokens() == 0

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(Recorder(fail)) as client:
            source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA, client=client)
            with pytest.raises(TransientSourceError, match="failed"):
                await source.fetch_page(Watermark("2025-07-01T00:00:00.000"), 2)

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self):
        handler = Recorder(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        async with _client(handler) as client:
            source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA, client=client)
            with pytest.raises(TransientSourceError, match="Invalid JSON"):
                await source.fetch_page(Watermark("2025-07-01T00:00:00.000"), 2)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"error": True}, "Expected a JSON array"),
            ([passup(2), passup(1)], "out of order"),
            ([passup(1), passup(2), passup(3)], "page size"),
            ([{"pass_up_id": "1"}], "usable time"),
        ],
    )
    async def test_contract_violations_are_rejected(self, payload, message):
        handler = Recorder(lambda request: httpx.Response(200, json=payload))
        async with _client(handler) as client:
            source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA, client=client)
            with pytest.raises(TransientSourceError, match=message):
                await source.fetch_page(Watermark("2025-07-01T00:00:00.000"), 2)

    @pytest.mark.asyncio
    async def test_record_at_resume_position_is_rejected(self):
        handler = Recorder(lambda request: httpx.Response(200, json=[passup(1)]))
        async with _client(handler) as client:
            source = SocrataFeedSource(FEEDS["passups"], OPEN_DATA, client=client)
            with pytest.raises(TransientSourceError, match="out of order"):
                await source.fetch_page(source.extract_watermark(passup(1)), 2)


def _routes_api(routes, stops_by_route=None):
    stops_by_route = stops_by_route or {}

    def respond(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/routes.json"):
            return httpx.Response(200, json={"routes": routes})
        if request.url.path.endswith("/stops.json"):
            route = request.url.params["route"]
            if route not in stops_by_route:
                return httpx.Response(404, text="no such route")
            return httpx.Response(200, json={"stops": stops_by_route[route]})
        return httpx.Response(404)

    return Recorder(respond)


def _stop(key: int) -> dict:
    return {"key": key, "name": f"Stop {key}", "centre": {"geographic": {"latitude": 49.9, "longitude": -97.1}}}


class TestTransitApi:
    @pytest.mark.asyncio
    async def test_preflight_without_key_is_configuration_error(self):
        source = TransitRoutesSource(FEEDS["routes"], TRANSIT_API, api_key=None)
        with pytest.raises(ConfigurationError, match="requires an API key"):
            await source.preflight()

    @pytest.mark.asyncio
    async def test_rejected_key_is_configuration_error_and_masked(self):
        handler = Recorder(lambda request: httpx.Response(401, text="invalid api key"))
        async with _client(handler) as client:
            source = TransitRoutesSource(FEEDS["routes"], TRANSIT_API, api_key=API_KEY, client=client)
            with pytest.raises(ConfigurationError) as exc:
                await source.preflight()

        assert handler.requests[0].url.params["api-key"] == API_KEY
        assert API_KEY not in str(exc.value)
        assert API_KEY[-4:] in str(exc.value)

    @pytest.mark.asyncio
    async def test_routes_paged_in_key_order_from_one_listing(self):
        routes = [{"key": "BLUE", "name": "Blue"}, {"key": 11, "name": "Portage"}, {"key": 16, "name": "Selkirk"}]
        handler = _routes_api(routes)
        async with _client(handler) as client:
            source = TransitRoutesSource(
                FEEDS["routes"], TRANSIT_API, api_key=API_KEY, client=client, clock=FixedClock()
            )
            first = await source.fetch_page(Watermark(""), 2)
            second = await source.fetch_page(source.extract_watermark(first[-1]), 2)
            third = await source.fetch_page(source.extract_watermark(second[-1]), 2)

        assert [r["key"] for r in first] == [11, 16]
        assert [r["key"] for r in second] == ["BLUE"]
        assert third == []
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_listing_refetched_after_ttl(self):
        clock = FixedClock()
        handler = _routes_api([{"key": "11"}])
        async with _client(handler) as client:
            source = TransitRoutesSource(
                FEEDS["routes"], TRANSIT_API, api_key=API_KEY, client=client,
                snapshot_ttl=60, clock=clock,
            )
            await source.fetch_page(Watermark(""), 10)
            clock.now += 60
            await source.fetch_page(Watermark(""), 10)

        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_stops_collected_per_route_skipping_missing(self):
        handler = _routes_api(
            [{"key": 11}, {"key": 16}, {"key": 18}],
            {"11": [_stop(10625), _stop(10001)], "18": [_stop(10001), _stop(20000)]},
        )
        async with _client(handler) as client:
            source = TransitStopsSource(FEEDS["stops"], TRANSIT_API, api_key=API_KEY, client=client)
            page = await source.fetch_page(Watermark(0), 10)

        # shared stops appear once, in numeric key order
        assert [r["key"] for r in page] == [10001, 10625, 20000]
        stop_requests = [r for r in handler.requests if r.url.path.endswith("/stops.json")]
        assert [r.url.params["route"] for r in stop_requests] == ["11", "16", "18"]
        assert all(r.url.params["usage"] == "long" for r in stop_requests)

    @pytest.mark.asyncio
    async def test_routes_body_without_array_is_transient(self):
        handler = Recorder(lambda request: httpx.Response(200, json={"query-time": "now"}))
        async with _client(handler) as client:
            source = TransitRoutesSource(FEEDS["routes"], TRANSIT_API, api_key=API_KEY, client=client)
            with pytest.raises(TransientSourceError, match="no 'routes' array"):
                await source.fetch_page(Watermark(""), 10)


class TestBuildSource:
    def test_transit_base_needs_a_listing(self):
        with pytest.raises(TypeError, match="abstract"):
            TransitApiSource(FEEDS["routes"], TRANSIT_API, api_key=API_KEY)

    def test_open_data_feeds_use_socrata(self):
        config = TransitPipeConfig(source={"open_data_url": OPEN_DATA})
        source = build_source(FEEDS["otp"], config)

        assert isinstance(source, SocrataFeedSource)
        assert source.base_url == OPEN_DATA

    def test_metadata_feeds_pick_up_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("TRANSIT_API_KEY", API_KEY)
        source = build_source(FEEDS["stops"], TransitPipeConfig())

        assert isinstance(source, TransitStopsSource)
        assert source.api_key == API_KEY
        assert source.auth.secret == API_KEY

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        source = build_source(FEEDS["passups"], TransitPipeConfig())
        client = source.client
        await source.aclose()
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self):
        async with httpx.AsyncClient() as client:
            source = build_source(FEEDS["passups"], TransitPipeConfig(), client=client)
            await source.aclose()
            assert not client.is_closed
