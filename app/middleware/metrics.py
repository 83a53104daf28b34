"""Prometheus HTTP metrics: request count, duration and in-flight gauge.

The endpoint label is the ROUTE TEMPLATE (``/v1/credentials/{credential_id}``),
not the raw path, so credential and request ids never become series of
their own.  Paths that match no route share ``<unmatched>``, which also
keeps scanners probing random URLs from growing the registry.

/metrics itself is not counted.
"""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.core.metrics import ACTIVE_REQUESTS, REQUEST_COUNT, REQUEST_DURATION

UNMATCHED = "<unmatched>"
SKIPPED_PATHS = frozenset({"/metrics"})


def endpoint_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if isinstance(path, str) else UNMATCHED


def _observe(request: Request, status_code: int, started: float) -> None:
    endpoint = endpoint_label(request)
    REQUEST_COUNT.labels(
        method=request.method, endpoint=endpoint, status_code=str(status_code)
    ).inc()
    REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(
        time.monotonic() - started
    )


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in SKIPPED_PATHS:
            return await call_next(request)

        started = time.monotonic()
        with ACTIVE_REQUESTS.track_inprogress():
            try:
                response = await call_next(request)
            except Exception:
                # Unhandled errors become a 500 further out.
                _observe(request, 500, started)
                raise
        _observe(request, response.status_code, started)
        return response
