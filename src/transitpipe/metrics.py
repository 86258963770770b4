# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# Feed source traffic
REQUESTS = Counter("tp_source_requests_total", "Feed source HTTP requests", ["feed"])
SOURCE_ERRORS = Counter("tp_source_errors_total", "Feed source errors", ["feed", "code"])
LATENCY = Histogram("tp_source_latency_seconds", "Feed source request latency", ["feed"])
RATE_LIMITER_WAITS = Counter(
    "tp_rate_limiter_waits_total", "Number of times the rate limiter caused a wait", ["source"]
)

# Sync engine
SYNC_PAGES = Counter("tp_sync_pages_total", "Pages committed", ["feed"])
SYNC_ROWS = Counter("tp_sync_rows_total", "Records applied by outcome", ["feed", "outcome"])
SYNC_REJECTED = Counter(
    "tp_sync_rejected_total", "Records skipped by validation", ["feed", "reason"]
)
SYNC_RETRIES = Counter("tp_sync_retries_total", "Transient failures retried", ["feed", "stage"])
SYNC_RUNS = Counter("tp_sync_runs_total", "Completed sync runs by final state", ["feed", "state"])
COMMIT_LATENCY = Histogram("tp_sync_commit_seconds", "Page transaction duration", ["feed"])
ACTIVE_SYNCS = Gauge("tp_active_syncs", "Sync engines currently running")

# Aggregate cache
CACHE_LOOKUPS = Counter(
    "tp_cache_lookups_total", "Aggregate cache lookups", ["aggregate", "result"]
)
CACHE_COMPUTE_SECONDS = Histogram(
    "tp_cache_compute_seconds", "Aggregate computation duration", ["aggregate"]
)
CACHE_ENTRIES = Gauge("tp_cache_entries", "Entries held by the aggregate cache")

__all__ = [
    "REQUESTS",
    "SOURCE_ERRORS",
    "LATENCY",
    "RATE_LIMITER_WAITS",
    "SYNC_PAGES",
    "SYNC_ROWS",
    "SYNC_REJECTED",
    "SYNC_RETRIES",
    "SYNC_RUNS",
    "COMMIT_LATENCY",
    "ACTIVE_SYNCS",
    "CACHE_LOOKUPS",
    "CACHE_COMPUTE_SECONDS",
    "CACHE_ENTRIES",
    "start_metrics_server",
]

_server_port: Optional[int] = None


def start_metrics_server(port: int = 8000, addr: str = "0.0.0.0") -> None:
    """Expose the default Prometheus registry over HTTP (idempotent per process)."""
    global _server_port

    if _server_port is not None:
        logger.debug(f"Metrics server already running on port {_server_port}")
        return
    start_http_server(port, addr=addr)
    _server_port = port
    logger.info(f"Metrics server started on http://{addr}:{port}/metrics")
