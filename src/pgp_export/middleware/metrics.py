"""Prometheus metrics middleware for HTTP request instrumentation."""

import time

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from pgp_export.metrics import REQUEST_COUNT, REQUEST_DURATION, REQUEST_IN_FLIGHT

logger = structlog.get_logger()

# Path segment -> placeholder for the segment that follows it
DYNAMIC_SEGMENTS = {"tables": "{table}"}


def normalize_path(path: str) -> str:
    """
    Normalize path for metrics labels to avoid high cardinality.

    Examples:
        /tables/analytics.orders/shards -> /tables/{table}/shards
    """
    parts = [p for p in path.strip("/").split("/") if p]
    normalized = []
    placeholder = None

    for part in parts:
        if placeholder is not None:
            normalized.append(placeholder)
            placeholder = None
            continue
        normalized.append(part)
        placeholder = DYNAMIC_SEGMENTS.get(part)

    return "/" + "/".join(normalized)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts requests, observes their duration and tracks requests in flight."""

    SKIP_PATHS = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json"})

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in self.SKIP_PATHS:
            return await call_next(request)

        method = request.method
        endpoint = normalize_path(path)
        status_code = "500"

        REQUEST_IN_FLIGHT.labels(method=method).inc()
        started = time.perf_counter()
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
            REQUEST_IN_FLIGHT.labels(method=method).dec()
