"""
Outbox event models.

An outbox row is written in the same transaction as the business mutation
that produced it and delivered asynchronously by the outbox worker.
Delivery is at-least-once: handlers must be idempotent.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class OutboxStatus(str, Enum):
    """
    Outbox row lifecycle.

    PENDING -> PROCESSING -> COMPLETED | PENDING (retry) | FAILED
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OutboxEvent(BaseModel):
    """Durable side-effect request."""

    id: str = Field(..., description="Event identifier (UUID)")
    event_type: str = Field(..., min_length=1, max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus = Field(default=OutboxStatus.PENDING)

    attempts: int = Field(default=0, ge=0, description="Failed handler runs so far")
    max_attempts: int = Field(default=3, ge=1)
    last_error: str | None = Field(default=None)

    scheduled_for: datetime = Field(default_factory=lambda: datetime.now(UTC))
    locked_until: datetime | None = Field(
        default=None, description="Lease expiry while PROCESSING"
    )
    processed_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        """Event types are UPPER_SNAKE_CASE handler keys."""
        if v != v.upper() or " " in v:
            raise ValueError("event_type must be UPPER_SNAKE_CASE (e.g. SEND_EMAIL)")
        return v


class OutboxStats(BaseModel):
    """Outbox queue depth for operators."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    oldest_pending_age_seconds: float | None = Field(
        default=None, description="Age of the oldest PENDING row (None if queue empty)"
    )


class OutboxBatchResult(BaseModel):
    """Outcome counts for one processing batch."""

    selected: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0

    @property
    def skipped(self) -> int:
        """Rows selected but claimed by another worker first."""
        return self.selected - self.claimed
