"""
Health check system for liveness and readiness probes.

- Liveness: no I/O, only fails if the process is wedged
- Readiness: pings the datastore (critical) and reports which external
  integrations are configured (non-critical, degrade only)
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from datafromimage.observability.logging import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health status enumeration."""

    HEALTHY = "healthy"  # All checks passed
    DEGRADED = "degraded"  # Some non-critical checks failed
    UNHEALTHY = "unhealthy"  # Critical checks failed


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    name: str
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = None
    last_check: datetime
    metadata: dict[str, Any] | None = None


class LivenessResponse(BaseModel):
    status: str = Field(default="alive")
    timestamp: datetime


class ReadinessResponse(BaseModel):
    """Readiness probe response with dependency checks."""

    status: HealthStatus
    timestamp: datetime
    ready: bool
    uptime_seconds: float
    components: list[ComponentHealth]


class HealthChecker:
    """Health check coordinator for all service components."""

    def __init__(self, version: str = "0.1.0"):
        self.start_time = time.time()
        self.version = version

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    async def check_liveness(self) -> LivenessResponse:
        return LivenessResponse(status="alive", timestamp=datetime.now(UTC))

    async def check_readiness(self, database=None, settings=None) -> ReadinessResponse:
        """
        Readiness probe: Is the service ready to accept traffic?

        Not ready only when the datastore is unreachable. Missing payment,
        identity or vision configuration marks the service degraded.
        """
        components: list[ComponentHealth] = []

        components.append(await self._check_database(database))
        if settings is not None:
            components.append(
                self._check_configured(
                    "stripe",
                    settings.stripe.is_configured and bool(settings.stripe.webhook_secret),
                )
            )
            components.append(self._check_configured("identity", bool(settings.identity.url)))
            components.append(self._check_configured("vision", settings.vision.has_api_key))

        if any(c.status == HealthStatus.UNHEALTHY for c in components):
            overall = HealthStatus.UNHEALTHY
        elif any(c.status == HealthStatus.DEGRADED for c in components):
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return ReadinessResponse(
            status=overall,
            timestamp=datetime.now(UTC),
            ready=overall != HealthStatus.UNHEALTHY,
            uptime_seconds=round(self.get_uptime_seconds(), 1),
            components=components,
        )

    async def _check_database(self, database) -> ComponentHealth:
        start = time.perf_counter()
        now = datetime.now(UTC)

        if database is None:
            return ComponentHealth(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message="Database not initialized",
                last_check=now,
            )

        healthy = await database.ping()
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        if not healthy:
            logger.error("Readiness check failed: database unreachable")

        return ComponentHealth(
            name="database",
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            message=None if healthy else "Database ping failed",
            latency_ms=latency_ms,
            last_check=now,
        )

    @staticmethod
    def _check_configured(name: str, configured: bool) -> ComponentHealth:
        return ComponentHealth(
            name=name,
            status=HealthStatus.HEALTHY if configured else HealthStatus.DEGRADED,
            message=None if configured else f"{name} not configured",
            last_check=datetime.now(UTC),
        )
