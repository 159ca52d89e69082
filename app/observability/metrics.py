# app/observability/metrics.py
# prometheus instrumentation: request metrics plus session sync counters

from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import APIRouter, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from prometheus_client.multiprocess import MultiProcessCollector
from starlette.middleware.base import BaseHTTPMiddleware

# Detect multiprocess mode via environment.
# NOTE: PROMETHEUS_MULTIPROC_DIR must be set BEFORE importing this module in real multi-proc setups.
PROM_MP_DIR = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
HAVE_MP = bool(PROM_MP_DIR and os.path.isdir(PROM_MP_DIR))

REGISTRY: Optional[CollectorRegistry] = None
if HAVE_MP:
    # Dedicated registry aggregating all worker processes
    REGISTRY = CollectorRegistry()
    MultiProcessCollector(REGISTRY)

_gauge_kwargs = {"multiprocess_mode": "livesum"} if HAVE_MP else {}

REQUEST_COUNT = Counter(
    "request_count",
    "Total request count",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=("method", "path"),
)
REQUEST_IN_PROGRESS = Gauge(
    "request_in_progress",
    "Requests currently in progress",
    ("method", "path"),
    **_gauge_kwargs,
)
ERROR_COUNT = Counter(
    "error_count",
    "Total error count",
    labelnames=("method", "path", "status"),
)

# Session sync domain counters
STATE_MERGES = Counter("session_state_merges_total", "Accepted shared-state merges")
STATE_MERGE_RETRIES = Counter(
    "session_state_merge_retries_total",
    "Merge attempts that lost the version check and were retried",
)
STATE_MERGE_CONFLICTS = Counter(
    "session_state_merge_conflicts_total",
    "Merges rejected after exhausting retries",
)
PRESENCE_HEARTBEATS = Counter("session_presence_heartbeats_total", "Presence heartbeats accepted")
PRESENCE_EVICTIONS = Counter("session_presence_evictions_total", "Stale presence rows evicted on read")


def _route_path(request: Request) -> str:
    # Label by route template to keep cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Count and time every request."""

    async def dispatch(self, request: Request, call_next: Callable):
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        # Route is unknown until routing ran; in-progress uses the top-level prefix
        in_progress = REQUEST_IN_PROGRESS.labels(method, "/" + request.url.path.strip("/").split("/", 1)[0])
        in_progress.inc()
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            in_progress.dec()
            path = _route_path(request)
            elapsed = time.perf_counter() - start
            REQUEST_LATENCY.labels(method, path).observe(elapsed)
            REQUEST_COUNT.labels(method, path, str(status)).inc()
            if status >= 500:
                ERROR_COUNT.labels(method, path, str(status)).inc()


router = APIRouter(tags=["Metrics"])


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """// expose /metrics"""
    payload = generate_latest(REGISTRY) if REGISTRY is not None else generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
