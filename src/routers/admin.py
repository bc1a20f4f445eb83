"""
Operator API endpoints.

Provides visibility and manual recovery for the resilience layer:
- Circuit breaker states and manual reset
- Rate limit inspection and reset
- Outbox statistics, retry of failed events, purge of completed events

Security:
- Every endpoint requires X-Admin-Key
- Throttled per client IP (slowapi)
- Resets are written to the security audit log
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.auth.dependencies import get_client_ip, verify_admin_key
from src.models.outbox import OutboxStats
from src.models.rate_limit import RateLimitStatus, SecurityEventType
from src.outbox.worker import OutboxWorker
from src.rate_limits import get_operator_rate_limit, operator_limiter
from src.resilience.circuit_breakers import CircuitBreakerRegistry, CircuitState
from src.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Operator"],
    dependencies=[Depends(verify_admin_key)],
)

OPERATOR_RATE_LIMIT = get_operator_rate_limit()


# Response models
class CircuitSummary(BaseModel):
    total: int
    closed: int
    open: int
    half_open: int


class CircuitsResponse(BaseModel):
    """All breaker snapshots plus a state summary."""

    circuits: list[dict]
    summary: CircuitSummary


class CircuitResetRequest(BaseModel):
    name: str | None = Field(default=None, description="Breaker to reset (omit for all)")


class CircuitResetResponse(BaseModel):
    reset: list[str]


class RateLimitResetRequest(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=100)
    identifier: str = Field(..., min_length=1, max_length=320)


class RateLimitResetResponse(BaseModel):
    endpoint: str
    reset: bool


class OutboxRetryResponse(BaseModel):
    reset_count: int


class OutboxPurgeRequest(BaseModel):
    older_than_days: int | None = Field(default=None, ge=1, le=3650)


class OutboxPurgeResponse(BaseModel):
    purged: int


# Dependencies
def get_circuit_registry(request: Request) -> CircuitBreakerRegistry:
    return request.app.state.circuit_registry


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_outbox_worker(request: Request) -> OutboxWorker:
    return request.app.state.outbox_worker


# Circuit breakers


@router.get("/circuits", response_model=CircuitsResponse)
@operator_limiter.limit(OPERATOR_RATE_LIMIT)
async def list_circuits(
    request: Request,
    registry: CircuitBreakerRegistry = Depends(get_circuit_registry),
) -> CircuitsResponse:
    """
    Get state of every circuit breaker.

    Returns:
        CircuitsResponse: Snapshots and counts per state
    """
    snapshots = registry.get_all_states()
    summary = CircuitSummary(
        total=len(snapshots),
        closed=sum(1 for s in snapshots if s.state is CircuitState.CLOSED),
        open=sum(1 for s in snapshots if s.state is CircuitState.OPEN),
        half_open=sum(1 for s in snapshots if s.state is CircuitState.HALF_OPEN),
    )
    return CircuitsResponse(
        circuits=[snapshot.to_dict() for snapshot in snapshots],
        summary=summary,
    )


@router.post("/circuits/reset", response_model=CircuitResetResponse)
@operator_limiter.limit(OPERATOR_RATE_LIMIT)
async def reset_circuits(
    request: Request,
    body: CircuitResetRequest | None = None,
    registry: CircuitBreakerRegistry = Depends(get_circuit_registry),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> CircuitResetResponse:
    """
    Reset one circuit breaker, or all of them, to CLOSED.

    Raises:
        404: Unknown breaker name
    """
    name = body.name if body else None

    if name is None:
        registry.reset_all()
        names = registry.names()
    else:
        if name not in registry:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Circuit breaker '{name}' not found",
            )
        registry.get(name).reset()
        names = [name]

    logger.warning(f"Operator reset circuit breakers: {', '.join(names)}")
    await limiter.log_security_event(
        SecurityEventType.CIRCUIT_RESET,
        ip_address=get_client_ip(request),
        metadata={"circuits": names},
    )
    return CircuitResetResponse(reset=names)


# Rate limits


@router.get("/rate-limits/{endpoint}/{identifier}", response_model=RateLimitStatus)
@operator_limiter.limit(OPERATOR_RATE_LIMIT)
async def get_rate_limit_status(
    request: Request,
    endpoint: str,
    identifier: str,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitStatus:
    """Inspect a counter without counting an attempt."""
    return await limiter.get_rate_limit_status(identifier, endpoint)


@router.post("/rate-limits/reset", response_model=RateLimitResetResponse)
@operator_limiter.limit(OPERATOR_RATE_LIMIT)
async def reset_rate_limit(
    request: Request,
    body: RateLimitResetRequest,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitResetResponse:
    """Clear a counter (e.g. a locked-out user verified by support)."""
    await limiter.reset_rate_limit(
        body.identifier, body.endpoint, actor=f"operator@{get_client_ip(request)}"
    )
    return RateLimitResetResponse(endpoint=body.endpoint, reset=True)


# Outbox


@router.get("/outbox/stats", response_model=OutboxStats)
@operator_limiter.limit(OPERATOR_RATE_LIMIT)
async def get_outbox_stats(
    request: Request,
    worker: OutboxWorker = Depends(get_outbox_worker),
) -> OutboxStats:
    """Outbox row counts by status and age of the oldest pending event."""
    return await worker.get_outbox_stats()


@router.post("/outbox/retry-failed", response_model=OutboxRetryResponse)
@operator_limiter.limit(OPERATOR_RATE_LIMIT)
async def retry_failed_events(
    request: Request,
    worker: OutboxWorker = Depends(get_outbox_worker),
) -> OutboxRetryResponse:
    """Move every FAILED event back to PENDING with a fresh attempt budget."""
    count = await worker.retry_failed_events()
    return OutboxRetryResponse(reset_count=count)


@router.post("/outbox/purge", response_model=OutboxPurgeResponse)
@operator_limiter.limit(OPERATOR_RATE_LIMIT)
async def purge_completed_events(
    request: Request,
    body: OutboxPurgeRequest | None = None,
    worker: OutboxWorker = Depends(get_outbox_worker),
) -> OutboxPurgeResponse:
    """Delete COMPLETED events older than older_than_days (default from settings)."""
    count = await worker.purge_completed_events(body.older_than_days if body else None)
    return OutboxPurgeResponse(purged=count)
