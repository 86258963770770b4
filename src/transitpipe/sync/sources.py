# SPDX-License-Identifier: Apache-2.0
"""Feed source adapters.

A source returns ordered pages of raw records given a resumption watermark.
Sources never touch local state; every failure is classified either as
:class:`TransientSourceError` (retried by the engine) or
:class:`ConfigurationError` (fatal for the feed).
"""

from __future__ import annotations

import abc
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from transitpipe.errors import ConfigurationError, TransientSourceError
from transitpipe.metrics import LATENCY, REQUESTS, SOURCE_ERRORS
from transitpipe.security.mask import redact_params, safe_for_log

from .auth import ApiKeyParamAuth, AuthStrategy, NoAuth
from .feeds import FeedSpec
from .rate_limit import RateLimiter
from .types import TIEBREAK_FIELD, RawRecord, Watermark


@runtime_checkable
class FeedSource(Protocol):
    """What the sync engine needs from a remote feed."""

    feed_id: str

    async def fetch_page(self, after: Watermark, page_size: int) -> List[RawRecord]:
        """Records strictly after ``after``, ascending, at most ``page_size``."""
        ...

    async def preflight(self) -> None:
        """Validate credentials before the engine starts."""
        ...

    def extract_watermark(self, record: RawRecord) -> Watermark: ...

    async def aclose(self) -> None: ...


class HttpFeedSource:
    """Shared HTTP plumbing: auth, pacing, metrics and error classification."""

    def __init__(
        self,
        spec: FeedSpec,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        auth: Optional[AuthStrategy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 30.0,
        user_agent: str = "transitpipe/0.1",
    ):
        self.spec = spec
        self.feed_id = spec.feed_id
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.auth = auth or NoAuth()
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def preflight(self) -> None:
        return None

    def extract_watermark(self, record: RawRecord) -> Watermark:
        return self.spec.watermark_of(record)

    def _safe(self, msg: str) -> str:
        return safe_for_log(msg, self.auth.secret)

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET ``base_url + path`` and decode the JSON body.

        Raises:
            ConfigurationError: 401/403 from a credentialed endpoint.
            TransientSourceError: network failure, non-2xx status or invalid JSON.
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        query: Dict[str, str] = dict(params or {})
        headers = {"Accept": "application/json", "User-Agent": self.user_agent}
        self.auth.apply(headers, query)
        url = f"{self.base_url}{path}"
        self.log.debug(f"GET {url} {redact_params(query)}")

        start = time.perf_counter()
        try:
            r = await self.client.get(url, params=query, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            SOURCE_ERRORS.labels(feed=self.feed_id, code=type(e).__name__).inc()
            raise TransientSourceError(
                self._safe(f"Request to {url} failed: {e!r}"), feed_id=self.feed_id
            ) from e
        finally:
            LATENCY.labels(feed=self.feed_id).observe(time.perf_counter() - start)
            REQUESTS.labels(feed=self.feed_id).inc()

        if r.status_code >= 400:
            SOURCE_ERRORS.labels(feed=self.feed_id, code=str(r.status_code)).inc()
            self._raise_for_status(r)

        try:
            return r.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise TransientSourceError(
                self._safe(f"Invalid JSON from {r.request.url}: {r.text[:200]!r}"),
                feed_id=self.feed_id,
                status_code=r.status_code,
            ) from e

    def _raise_for_status(self, r: httpx.Response) -> None:
        message = self._safe(f"HTTP {r.status_code} from {r.request.url}: {r.text[:200]}")
        if r.status_code in (401, 403) and not isinstance(self.auth, NoAuth):
            raise ConfigurationError(
                f"Credentials rejected for feed '{self.feed_id}': {message}", feed_id=self.feed_id
            )
        retry_after = _parse_retry_after(r.headers.get("Retry-After"))
        if r.status_code == 429 and retry_after is not None and self.rate_limiter is not None:
            self.rate_limiter.notify_retry_after(retry_after)
        raise TransientSourceError(
            message, feed_id=self.feed_id, status_code=r.status_code, retry_after=retry_after
        )

    def _check_page(self, records: Any, after: Watermark, page_size: int) -> List[RawRecord]:
        """Reject payloads that break the page contract instead of ingesting them."""
        if not isinstance(records, list):
            raise TransientSourceError(
                f"Expected a JSON array from {self.feed_id}, got {type(records).__name__}",
                feed_id=self.feed_id,
            )
        if len(records) > page_size:
            raise TransientSourceError(
                f"{self.feed_id} returned {len(records)} records for page size {page_size}",
                feed_id=self.feed_id,
            )
        previous = after
        for record in records:
            try:
                current = self.extract_watermark(record)
            except (KeyError, TypeError, ValueError) as e:
                raise TransientSourceError(
                    f"{self.feed_id} record without a usable {self.spec.ordering_field}: {e}",
                    feed_id=self.feed_id,
                ) from e
            if current < previous or current == after:
                raise TransientSourceError(
                    f"{self.feed_id} page out of order: {current} after {previous}",
                    feed_id=self.feed_id,
                )
            previous = current
        return records


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _soql_literal(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


class SocrataFeedSource(HttpFeedSource):
    """Paged reader for a Socrata open data resource.

    Pages are ordered by the feed's ordering field with the row id ``:id``
    as tie-break, and resumed with a composite ``$where`` so a page boundary
    inside a run of equal timestamps neither skips nor repeats rows.
    """

    def __init__(self, spec: FeedSpec, base_url: str, **kwargs: Any):
        if not spec.resource_id:
            raise ValueError(f"Feed '{spec.feed_id}' has no Socrata resource id")
        super().__init__(spec, base_url, **kwargs)

    def build_request_params(self, after: Watermark, page_size: int) -> Dict[str, str]:
        field = self.spec.ordering_field
        value = _soql_literal(after.value)
        if after.tiebreak:
            where = (
                f"{field} > {value} OR ({field} = {value} "
                f"AND {TIEBREAK_FIELD} > {_soql_literal(after.tiebreak)})"
            )
        else:
            where = f"{field} > {value}"
        return {
            "$select": f"{TIEBREAK_FIELD}, *",
            "$where": where,
            "$order": f"{field} ASC, {TIEBREAK_FIELD} ASC",
            "$limit": str(page_size),
        }

    async def fetch_page(self, after: Watermark, page_size: int) -> List[RawRecord]:
        params = self.build_request_params(after, page_size)
        payload = await self._get_json(f"{self.spec.resource_id}.json", params)
        records = self._check_page(payload, after, page_size)
        self.log.debug(f"{self.feed_id}: {len(records)} records after {after}")
        return records


class TransitApiSource(HttpFeedSource, abc.ABC):
    """Snapshot listing from the credentialed Transit API, served in key order.

    The listing is fetched once and reused for ``snapshot_ttl`` seconds, so
    paging through it costs one listing rather than one per page.
    """

    def __init__(
        self,
        spec: FeedSpec,
        base_url: str,
        api_key: Optional[str],
        *,
        snapshot_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        **kwargs: Any,
    ):
        self.api_key = api_key
        if api_key:
            kwargs.setdefault("auth", ApiKeyParamAuth(api_key))
        super().__init__(spec, base_url, **kwargs)
        self.snapshot_ttl = snapshot_ttl
        self._clock = clock
        self._snapshot: Optional[List[RawRecord]] = None
        self._snapshot_at = 0.0

    async def preflight(self) -> None:
        if not self.api_key:
            raise ConfigurationError(
                f"Feed '{self.feed_id}' requires an API key", feed_id=self.feed_id
            )
        # 401/403 surface here as ConfigurationError before any page is fetched
        await self._fetch_routes()

    async def _fetch_routes(self) -> List[Dict[str, Any]]:
        body = await self._get_json("routes.json")
        routes = body.get("routes") if isinstance(body, dict) else None
        if not isinstance(routes, list):
            raise TransientSourceError(
                "routes.json response has no 'routes' array", feed_id=self.feed_id
            )
        return routes

    @abc.abstractmethod
    async def _fetch_listing(self) -> List[RawRecord]:
        """Every record of the listing, in any order."""

    async def _listing(self) -> List[RawRecord]:
        now = self._clock()
        if self._snapshot is not None and now - self._snapshot_at < self.snapshot_ttl:
            return self._snapshot

        by_key: Dict[Watermark, RawRecord] = {}
        for record in await self._fetch_listing():
            try:
                by_key[self.extract_watermark(record)] = record
            except (KeyError, TypeError, ValueError) as e:
                raise TransientSourceError(
                    f"{self.feed_id} listing entry without a usable key: {e}",
                    feed_id=self.feed_id,
                ) from e
        self._snapshot = [by_key[k] for k in sorted(by_key)]
        self._snapshot_at = now
        self.log.info(f"{self.feed_id}: fetched listing of {len(self._snapshot)} records")
        return self._snapshot

    async def fetch_page(self, after: Watermark, page_size: int) -> List[RawRecord]:
        listing = await self._listing()
        page = [r for r in listing if self.extract_watermark(r) > after][:page_size]
        return self._check_page(page, after, page_size)


class TransitRoutesSource(TransitApiSource):
    async def _fetch_listing(self) -> List[RawRecord]:
        return await self._fetch_routes()


class TransitStopsSource(TransitApiSource):
    """Stops of every route, one ``stops.json`` request per route."""

    async def _fetch_listing(self) -> List[RawRecord]:
        stops: List[RawRecord] = []
        for route in await self._fetch_routes():
            route_key = route.get("key") if isinstance(route, dict) else None
            if route_key is None:
                continue
            try:
                body = await self._get_json(
                    "stops.json", {"route": str(route_key), "usage": "long"}
                )
            except TransientSourceError as e:
                if e.status_code == 404:
                    self.log.warning(f"No stops listed for route {route_key}")
                    continue
                raise
            route_stops = body.get("stops") if isinstance(body, dict) else None
            if not isinstance(route_stops, list):
                raise TransientSourceError(
                    f"stops.json for route {route_key} has no 'stops' array",
                    feed_id=self.feed_id,
                )
            stops.extend(route_stops)
        return stops


_TRANSIT_SOURCES = {
    "routes": TransitRoutesSource,
    "stops": TransitStopsSource,
}


def build_source(
    spec: FeedSpec,
    config: Any,
    *,
    client: Optional[httpx.AsyncClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> HttpFeedSource:
    """Create the adapter for ``spec`` from a :class:`TransitPipeConfig`."""
    source_cfg = config.source
    common: Dict[str, Any] = {
        "client": client,
        "timeout": source_cfg.timeout,
        "user_agent": source_cfg.user_agent,
    }
    if spec.resource_id:
        return SocrataFeedSource(spec, source_cfg.open_data_url, **common)
    try:
        source_cls = _TRANSIT_SOURCES[spec.feed_id]
    except KeyError:
        raise ConfigurationError(
            f"No source adapter for feed '{spec.feed_id}'", feed_id=spec.feed_id
        ) from None
    return source_cls(
        spec,
        source_cfg.transit_api_url,
        config.resolve_api_key(),
        snapshot_ttl=source_cfg.snapshot_ttl,
        rate_limiter=rate_limiter,
        **common,
    )


__all__ = [
    "FeedSource",
    "HttpFeedSource",
    "SocrataFeedSource",
    "TransitApiSource",
    "TransitRoutesSource",
    "TransitStopsSource",
    "build_source",
]
