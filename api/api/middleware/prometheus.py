"""Prometheus metrics for HTTP traffic and billing processor calls.

Path normalisation collapses identifiers (``/managed-services/<hex>`` ->
``/managed-services/{id}``) to keep label cardinality bounded.
"""

from __future__ import annotations

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    "agency_billing_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "agency_billing_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

BILLING_REMOTE_CALLS_TOTAL = Counter(
    "agency_billing_remote_calls_total",
    "Billing processor calls by operation and outcome",
    ["operation", "outcome"],
)

BILLING_REMOTE_FAILURES_TOTAL = Counter(
    "agency_billing_remote_failures_total",
    "Billing processor failures by operation and whether the local change still went ahead",
    ["operation", "degraded"],
)

_PATH_PARAM_PATTERNS = [
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    (re.compile(r"/[0-9a-f]{16,64}"), "/{id}"),
    (re.compile(r"/\d+"), "/{id}"),
]

_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


def _normalise_path(path: str) -> str:
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


def record_remote_failure(operation: str, *, degraded: bool) -> None:
    """Count a failed processor call.

    ``degraded=True`` means the local change was committed anyway and the
    processor needs manual reconciliation.
    """
    BILLING_REMOTE_FAILURES_TOTAL.labels(operation=operation, degraded=str(degraded).lower()).inc()


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        normalised = _normalise_path(path)
        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=request.method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=request.method, path=normalised).observe(duration)
        return response
