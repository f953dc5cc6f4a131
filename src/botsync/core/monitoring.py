"""Prometheus metrics and Sentry integration.

Lifecycle counters are the operational signal for the reconciliation
design: a rising ``reconciliation_orphans_fixed_total`` means webhooks are
being lost, and ``bot_transitions_total{result="conflict"}`` means writers
are contending on the same bot.

Provides:
- MetricsMiddleware: per-route request counts, latency and in-flight gauge
- Lifecycle counters for webhooks, transitions, sweeps, orphans and billing
- track_vendor_call(): times Bot Provider API calls by outcome
- init_sentry(): error reporting with health-check traffic excluded from traces
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Health-check and scrape paths are never traced
_UNTRACED_PATHS = frozenset({"/metrics", "/health", "/health/ready"})

# ── Request Metrics ──────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by route template",
    ["method", "endpoint"],
    buckets=(0.005, 0.025, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0),
)

http_requests_in_flight = Gauge(
    "http_requests_in_flight",
    "HTTP requests currently being served",
)

# ── Lifecycle Metrics ────────────────────────────────────────────────────────

webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound bot provider webhooks by outcome",
    ["outcome"],
)

bot_transitions_total = Counter(
    "bot_transitions_total",
    "Proposed bot status transitions by source and result",
    ["source", "result"],
)

reconciliation_sweeps_total = Counter(
    "reconciliation_sweeps_total",
    "Reconciliation sweeps by outcome",
    ["outcome"],
)

reconciliation_orphans_fixed_total = Counter(
    "reconciliation_orphans_fixed_total",
    "Bots moved to a terminal state by the reconciliation poller",
)

vendor_request_duration_seconds = Histogram(
    "vendor_request_duration_seconds",
    "Bot provider API call duration in seconds",
    ["operation", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

billing_finalizations_total = Counter(
    "billing_finalizations_total",
    "Session billing finalizations, by whether per-minute usage rows existed",
    ["basis"],
)

billable_minutes_total = Counter(
    "billable_minutes_total",
    "Billable minutes written at finalization",
)


# ── Middleware ───────────────────────────────────────────────────────────────


def _endpoint_label(request: Request) -> str:
    # Route template keeps session and bot ids out of the label set
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count, latency and concurrency.

    Scrape traffic is not counted. An exception escaping the app is counted
    as a 500 before it propagates.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        status_code = 500
        started = time.perf_counter()
        http_requests_in_flight.inc()
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            http_requests_in_flight.dec()
            endpoint = _endpoint_label(request)
            http_requests_total.labels(
                method=request.method, endpoint=endpoint, status_code=str(status_code)
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method, endpoint=endpoint
            ).observe(time.perf_counter() - started)


@asynccontextmanager
async def track_vendor_call(operation: str) -> AsyncGenerator[None, None]:
    """Record duration and outcome of one Bot Provider API call.

    Usage:
        async with track_vendor_call("get_bot"):
            response = await client.get(...)
    """
    started = time.perf_counter()
    outcome = "success"
    try:
        yield
    except Exception:
        outcome = "error"
        raise
    finally:
        vendor_request_duration_seconds.labels(operation=operation, status=outcome).observe(
            time.perf_counter() - started
        )


# ── Sentry ───────────────────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry for the API and the background reconciliation loops.

    Args:
        dsn: Sentry DSN.
        environment: Deployment environment; production samples 10% of traces.
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sample_rate = 0.1 if environment == "production" else 1.0

    def traces_sampler(sampling_context: dict) -> float:
        scope = sampling_context.get("asgi_scope") or {}
        if scope.get("path") in _UNTRACED_PATHS:
            return 0.0
        return sample_rate

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sampler=traces_sampler,
        send_default_pii=False,
        integrations=[StarletteIntegration(), FastApiIntegration()],
    )


def get_metrics_response() -> Response:
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
