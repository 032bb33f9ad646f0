"""
FastAPI middleware for structured logging with request context.

Automatically:
- Generates request_id for each request
- Extracts trace_id from X-Trace-ID header
- Logs request/response with latency
- Propagates context to all log calls

The authenticated account_id is added to the context later, by the
authentication dependency, once the access token has been verified.
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from datafromimage.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic request logging with structured context.

    Headers:
    - X-Request-ID: Client-provided request ID (optional, auto-generated if missing)
    - X-Trace-ID: Distributed trace ID (optional, auto-generated if missing)
    - Returns X-Request-ID and X-Trace-ID in response headers
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"

        with RequestContext(request_id=request_id, trace_id=trace_id):
            should_log = RequestLoggingFilter.should_log(request.url.path)
            start_time = time.perf_counter()

            if should_log:
                logger.info(
                    "HTTP request started",
                    method=request.method,
                    path=request.url.path,
                    client_host=request.client.host if request.client else None,
                )

            try:
                response = await call_next(request)

                latency_ms = (time.perf_counter() - start_time) * 1000
                if should_log:
                    logger.info(
                        "HTTP request completed",
                        method=request.method,
                        path=request.url.path,
                        status_code=response.status_code,
                        latency_ms=round(latency_ms, 2),
                    )

                response.headers["X-Request-ID"] = request_id
                response.headers["X-Trace-ID"] = trace_id

                return response

            except Exception as exc:
                latency_ms = (time.perf_counter() - start_time) * 1000

                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=request.url.path,
                    latency_ms=round(latency_ms, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )

                # Re-raise for FastAPI exception handlers
                raise


class SlowRequestLogger(BaseHTTPMiddleware):
    """
    Middleware for logging slow requests.

    Logs a warning above warning_threshold_ms and an error above
    error_threshold_ms. Extraction waits on a remote model, so the
    defaults are measured in seconds.
    """

    def __init__(
        self,
        app: ASGIApp,
        warning_threshold_ms: float = 5000.0,
        error_threshold_ms: float = 20000.0,
    ):
        super().__init__(app)
        self.warning_threshold_ms = warning_threshold_ms
        self.error_threshold_ms = error_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        response = await call_next(request)

        latency_ms = (time.perf_counter() - start_time) * 1000

        if latency_ms > self.error_threshold_ms:
            logger.error(
                "Slow request detected (exceeds error threshold)",
                method=request.method,
                path=request.url.path,
                latency_ms=round(latency_ms, 2),
                threshold_ms=self.error_threshold_ms,
                status_code=response.status_code,
            )
        elif latency_ms > self.warning_threshold_ms:
            logger.warning(
                "Slow request detected (exceeds warning threshold)",
                method=request.method,
                path=request.url.path,
                latency_ms=round(latency_ms, 2),
                threshold_ms=self.warning_threshold_ms,
                status_code=response.status_code,
            )

        return response


class RequestLoggingFilter:
    """Paths excluded from per-request logs (probes, scrapes, docs)."""

    EXCLUDED_PATHS = {
        "/health/liveness",
        "/health/readiness",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    @classmethod
    def should_log(cls, path: str) -> bool:
        return path not in cls.EXCLUDED_PATHS
