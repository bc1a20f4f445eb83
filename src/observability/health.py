"""
Liveness and readiness probes.

Liveness does no I/O. Readiness inspects the components wired at startup:

    database          unreachable -> UNHEALTHY (outbox rows cannot be written)
    rate_limiter      local fallback -> DEGRADED
    circuit_breakers  any OPEN -> DEGRADED

Only UNHEALTHY takes the pod out of rotation; degraded components still have
a fallback that serves traffic.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.observability.logging import get_logger
from src.resilience.circuit_breakers import CircuitBreakerRegistry, CircuitState
from src.resilience.rate_limiter import RateLimiter
from src.storage.database import ResilienceDatabase

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# Worst first
_SEVERITY = (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED)


class ComponentHealth(BaseModel):
    name: str
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = Field(default=None, description="Probe duration")
    last_check: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] | None = None


class LivenessResponse(BaseModel):
    status: str = "alive"
    timestamp: datetime
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: HealthStatus
    timestamp: datetime
    ready: bool = Field(description="False only when a critical component is down")
    components: list[ComponentHealth]


def _overall(components: list[ComponentHealth]) -> HealthStatus:
    statuses = {component.status for component in components}
    for status in _SEVERITY:
        if status in statuses:
            return status
    return HealthStatus.HEALTHY


class HealthChecker:
    def __init__(self):
        self.started_at = time.monotonic()

    async def check_liveness(self) -> LivenessResponse:
        return LivenessResponse(
            timestamp=datetime.now(UTC),
            uptime_seconds=round(time.monotonic() - self.started_at, 3),
        )

    async def check_readiness(
        self,
        database: ResilienceDatabase | None = None,
        rate_limiter: RateLimiter | None = None,
        circuit_registry: CircuitBreakerRegistry | None = None,
    ) -> ReadinessResponse:
        """Probe each wired component; components left as None are skipped."""
        components: list[ComponentHealth] = []
        if database is not None:
            components.append(self._probe_database(database))
        if rate_limiter is not None:
            components.append(self._probe_rate_limiter(rate_limiter))
        if circuit_registry is not None:
            components.append(self._probe_circuits(circuit_registry))

        status = _overall(components)
        return ReadinessResponse(
            status=status,
            timestamp=datetime.now(UTC),
            ready=status is not HealthStatus.UNHEALTHY,
            components=components,
        )

    @staticmethod
    def _probe_database(database: ResilienceDatabase) -> ComponentHealth:
        started = time.perf_counter()
        try:
            with database._get_connection() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            logger.error("Readiness: database unreachable", error=str(exc), exc_info=True)
            status, message = HealthStatus.UNHEALTHY, f"Database unreachable: {exc}"
        else:
            status, message = HealthStatus.HEALTHY, "Database responsive"

        return ComponentHealth(
            name="database",
            status=status,
            message=message,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    @staticmethod
    def _probe_rate_limiter(rate_limiter: RateLimiter) -> ComponentHealth:
        if not rate_limiter.degraded:
            return ComponentHealth(name="rate_limiter", status=HealthStatus.HEALTHY)

        return ComponentHealth(
            name="rate_limiter",
            status=HealthStatus.DEGRADED,
            message="Redis unavailable; counting attempts in process memory",
            metadata={"backend": "local"},
        )

    @staticmethod
    def _probe_circuits(registry: CircuitBreakerRegistry) -> ComponentHealth:
        open_circuits = [
            snapshot.name
            for snapshot in registry.get_all_states()
            if snapshot.state is CircuitState.OPEN
        ]
        return ComponentHealth(
            name="circuit_breakers",
            status=HealthStatus.DEGRADED if open_circuits else HealthStatus.HEALTHY,
            message=f"Open: {', '.join(open_circuits)}" if open_circuits else None,
            metadata={"total": len(registry), "open": open_circuits},
        )


_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker()
    return _health_checker
