"""
Rate limiting and security audit models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RateLimitBackend(str, Enum):
    """Store that produced a rate limit decision."""

    REDIS = "redis"
    LOCAL = "local"  # Degraded: shared store unreachable
    FAIL_OPEN = "fail_open"  # Both stores failed


class RateLimitResult(BaseModel):
    """Outcome of a single rate limit check."""

    allowed: bool
    attempts: int = Field(ge=0, description="Attempts in the current window, this one included")
    max_attempts: int = Field(ge=1)
    retry_after_seconds: int = Field(default=0, ge=0)
    retry_after_ms: int = Field(default=0, ge=0)
    degraded: bool = Field(default=False, description="Decided by the per-instance fallback")
    error: bool = Field(default=False, description="Failed open because no store was usable")
    backend: RateLimitBackend = Field(default=RateLimitBackend.REDIS)

    @property
    def remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)


class RateLimitStatus(BaseModel):
    """Read-only view of a counter (does not count as an attempt)."""

    endpoint: str
    identifier: str
    attempts: int = Field(ge=0)
    max_attempts: int = Field(ge=1)
    remaining: int = Field(ge=0)
    resets_in_seconds: int = Field(default=0, ge=0)
    degraded: bool = False


class SecurityEventType(str, Enum):
    """Audit event types written to security_events."""

    RATE_LIMIT_CHECK = "RATE_LIMIT_CHECK"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    RATE_LIMIT_RESET = "RATE_LIMIT_RESET"
    CIRCUIT_RESET = "CIRCUIT_RESET"


class SecurityEvent(BaseModel):
    """Audit row for the security reporting pipeline."""

    event_type: SecurityEventType
    identifier: str | None = None
    endpoint: str | None = None
    attempts: int | None = None
    allowed: bool | None = None
    ip_address: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)
