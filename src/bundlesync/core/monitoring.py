"""Prometheus metrics and Sentry integration.

HTTP metrics are recorded by MetricsMiddleware. The sync engine records its
own: webhook admission outcomes, accepted transitions, publish runs, commerce
API calls, catalog diff outcomes and background task load. /metrics serves
the default registry.
"""

from __future__ import annotations

import time

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

METRICS_PATH = "/metrics"

# ── HTTP ─────────────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Engine ──────────────────────────────────────────────────────────────

webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound commerce webhooks by topic and outcome",
    ["topic", "outcome"],
)

sync_transitions_total = Counter(
    "sync_transitions_total",
    "Accepted SyncRecord transitions",
    ["from_status", "to_status", "trigger"],
)

publish_duration_seconds = Histogram(
    "publish_duration_seconds",
    "Composite-offering publish duration in seconds",
    ["outcome"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
)

commerce_requests_total = Counter(
    "commerce_requests_total",
    "Commerce platform API calls by GraphQL operation and result",
    ["operation", "result"],
)

catalog_sync_outcomes_total = Counter(
    "catalog_sync_outcomes_total",
    "Per-bundle outcomes of catalog-wide sync runs",
    ["outcome"],
)

sync_tasks_in_flight = Gauge(
    "sync_tasks_in_flight",
    "Background sync tasks currently running or waiting for a slot",
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and latency, labelled by route template."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == METRICS_PATH:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Template path keeps bundle ids out of the label set
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(request.method, endpoint, str(response.status_code)).inc()
        http_request_duration_seconds.labels(request.method, endpoint).observe(elapsed)
        return response


# ── Sentry ───────────────────────────────────────────────────────────────────

_SCRUBBED_HEADERS = frozenset({
    "authorization",
    "x-shopify-access-token",
    "x-shopify-hmac-sha256",
})


def _scrub_event(event: dict, hint: dict) -> dict:
    """Drop credentials and webhook signatures from captured request headers."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in _SCRUBBED_HEADERS:
                headers[name] = "[scrubbed]"
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry with the FastAPI integration and header scrubbing."""
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        send_default_pii=False,
        before_send=_scrub_event,
        integrations=[StarletteIntegration(), FastApiIntegration()],
    )


def get_metrics_response() -> Response:
    """Prometheus exposition of the default registry."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
