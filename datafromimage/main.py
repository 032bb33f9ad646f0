"""
FastAPI application for the datafromimage service.

Provides REST API for:
- Credit purchases through Stripe Checkout and the signed payment webhook
- Credit-gated text extraction from images
- Health monitoring and Prometheus metrics
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from datafromimage.config import Settings, get_settings
from datafromimage.errors import BillingError
from datafromimage.observability.health import (
    HealthChecker,
    LivenessResponse,
    ReadinessResponse,
)
from datafromimage.observability.logging import configure_logging, get_logger
from datafromimage.observability.logging_middleware import (
    SlowRequestLogger,
    StructuredLoggingMiddleware,
)
from datafromimage.observability.metrics import generate_metrics, track_error
from datafromimage.observability.middleware import PrometheusMiddleware
from datafromimage.observability.request_limits import RequestSizeLimitMiddleware
from datafromimage.rate_limits import limiter, rate_limit_exceeded_handler
from datafromimage.routers import billing_router, extraction_router
from datafromimage.services import Services, build_services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the service container unless one was injected, and closes the
    container it built on shutdown.
    """
    settings: Settings = app.state.settings
    owns_services = app.state.services is None

    logger.info("=== datafromimage service starting ===")

    try:
        if owns_services:
            app.state.services = await build_services(settings)
            logger.info("✓ Services initialized", database=settings.database.path)

        logger.info("=== Service Ready ===")

        yield  # Application runs here

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        if owns_services and app.state.services is not None:
            await app.state.services.aclose()
            app.state.services = None
        logger.info("=== Shutdown complete ===")


def _error_timestamp() -> str:
    return datetime.now(UTC).isoformat()


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render domain errors as {"error", "code", "timestamp"} with their status."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        path=request.url.path,
        error_code=exc.error_code,
        error=exc.message,
        status_code=exc.status_code,
    )
    track_error(error_type=exc.error_code, endpoint=request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.error_code, "timestamp": _error_timestamp()},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTPException in the same envelope as domain errors."""
    if exc.status_code >= 500:
        track_error(error_type=f"http_{exc.status_code}", endpoint=request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "timestamp": _error_timestamp()},
        headers=getattr(exc, "headers", None),
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (loaded from the environment when omitted)
        services: Prebuilt service container; when given, the lifespan
            neither builds nor closes services
    """
    settings = settings or (services.settings if services else get_settings())

    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
        service_name=settings.logging.service_name,
        service_version=settings.logging.service_version,
        environment=settings.logging.environment,
    )

    app = FastAPI(
        title="datafromimage API",
        description="Credit-based image text extraction with Stripe payments",
        version=settings.logging.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services
    app.state.health_checker = HealthChecker(version=settings.logging.service_version)

    # Shared limiter; each app opts out through settings.rate_limit.enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    cors_origins = settings.cors.origins_list
    if "*" in cors_origins:
        logger.warning("CORS allows ALL origins (*) - configure CORS_ALLOWED_ORIGINS for production")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=settings.cors.methods_list,
        allow_headers=settings.cors.headers_list,
        max_age=settings.cors.max_age,
    )

    # Processed in reverse order of registration:
    # 1. RequestSizeLimitMiddleware (innermost) - Rejects oversized requests first
    # 2. PrometheusMiddleware - Tracks metrics
    # 3. SlowRequestLogger - Logs slow requests
    # 4. StructuredLoggingMiddleware (outermost) - Sets request context
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(
        SlowRequestLogger,
        warning_threshold_ms=settings.logging.slow_request_warning_ms,
        error_threshold_ms=settings.logging.slow_request_error_ms,
    )
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        RequestSizeLimitMiddleware,
        max_body_size=settings.service.max_request_body_size,
    )

    app.include_router(billing_router)
    app.include_router(extraction_router)

    @app.get("/", tags=["Info"])
    async def root():
        return {
            "service": settings.logging.service_name,
            "version": settings.logging.service_version,
            "docs": "/docs",
        }

    @app.get(
        "/health/liveness",
        response_model=LivenessResponse,
        tags=["Health"],
        summary="Liveness probe",
    )
    async def liveness_probe(request: Request):
        return await request.app.state.health_checker.check_liveness()

    @app.get(
        "/health/readiness",
        response_model=ReadinessResponse,
        tags=["Health"],
        summary="Readiness probe",
        responses={
            200: {"description": "Service is ready"},
            503: {"description": "Service is not ready"},
        },
    )
    async def readiness_probe(request: Request, response: Response):
        """
        HTTP 200 when the datastore answers (healthy or degraded), 503 otherwise.
        """
        current = request.app.state.services
        readiness = await request.app.state.health_checker.check_readiness(
            database=current.database if current else None,
            settings=request.app.state.settings,
        )

        if not readiness.ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

        return readiness

    @app.get("/metrics", tags=["Monitoring"], include_in_schema=False)
    async def metrics():
        data, content_type = generate_metrics()
        return Response(content=data, media_type=content_type)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "datafromimage.main:app",
        host=_settings.service.host,
        port=_settings.service.port,
        reload=_settings.service.reload,
        workers=_settings.service.workers,
        log_level=_settings.logging.level.lower(),
    )
