"""
Observability middleware for automatic metric tracking.

PrometheusMiddleware tracks request latency, count and in-flight requests.
"""

import logging
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from datafromimage.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic Prometheus metric tracking.

    Tracks:
    - Request latency (histogram)
    - Request count (counter)
    - Active requests (gauge)

    Requests that match no route are recorded under a single "unmatched"
    endpoint label so scanners cannot blow up metric cardinality.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method

        http_requests_active.labels(method=method).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code

        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            track_error(error_type=type(exc).__name__, endpoint=self._endpoint_label(request))
            raise

        finally:
            duration_seconds = time.perf_counter() - start_time
            http_requests_active.labels(method=method).dec()
            track_request(
                method=method,
                endpoint=self._endpoint_label(request),
                status_code=status_code,
                duration_seconds=duration_seconds,
            )

        return response

    @staticmethod
    def _endpoint_label(request: Request) -> str:
        route = request.scope.get("route")
        return getattr(route, "path", None) or "unmatched"
