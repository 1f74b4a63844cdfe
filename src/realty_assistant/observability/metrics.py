from __future__ import annotations

"""Prometheus metrics for the realty assistant API.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for the best-effort paths whose failures are otherwise only
visible in logs (audit saves, generation errors).
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds); streaming replies land in the tail
REQUEST_LATENCY = Histogram(
    "realty_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

AUDIT_SAVES = Counter(
    "realty_audit_saves_total",
    "Conversation audit save attempts by outcome",
    labelnames=("outcome",),
)

GENERATION_FAILURES = Counter(
    "realty_generation_failures_total",
    "Chat generations that ended in an apology reply",
    labelnames=("mode",),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g. /chat/sessions/{id}) to a coarse label.

    Keeps the first segment, or the first two when the first is the /api prefix.
    """
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return "/api/" + segs[1]
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
