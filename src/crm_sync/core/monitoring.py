"""Prometheus metrics for sync runs, provider traffic and the rate limiter.

Provides:
- Counters/histograms updated by the orchestrator, adapters and limiter
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- get_metrics_endpoint(): FastAPI route handler for /metrics
"""

from __future__ import annotations

import time

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "crm_sync_http_requests_total",
    "Total HTTP requests served by the engine API",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "crm_sync_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Sync runs closed, by final status",
    ["provider", "mode", "status"],
)

sync_run_duration_seconds = Histogram(
    "crm_sync_run_duration_seconds",
    "Wall-clock duration of closed sync runs",
    ["provider", "mode"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0),
)

sync_records_total = Counter(
    "crm_sync_records_total",
    "Records processed by sync runs",
    ["provider", "outcome"],
)

sync_conflicts_total = Counter(
    "crm_sync_conflicts_total",
    "Field conflicts detected, by policy",
    ["provider", "policy"],
)

# ── Provider Metrics ─────────────────────────────────────────────────────────

provider_requests_total = Counter(
    "crm_sync_provider_requests_total",
    "Outbound provider API requests",
    ["provider", "status"],
)

provider_request_duration_seconds = Histogram(
    "crm_sync_provider_request_duration_seconds",
    "Outbound provider API request duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

rate_limiter_wait_seconds = Histogram(
    "crm_sync_rate_limiter_wait_seconds",
    "Time spent waiting for a rate limiter token",
    buckets=(0.0, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0),
)

rate_limiter_backpressure_total = Counter(
    "crm_sync_rate_limiter_backpressure_total",
    "Requests refused by the rate limiter after max wait",
    ["bucket"],
)

active_connections = Gauge(
    "crm_sync_active_connections",
    "Connections seen as active at the last delta fan-out",
    ["provider"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record request count and latency for every API call."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)
        return response


async def get_metrics_endpoint() -> Response:
    """Expose metrics in Prometheus text format."""
    return Response(content=generate_latest(REGISTRY), media_type="text/plain; version=0.0.4")
