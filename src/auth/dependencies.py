"""
FastAPI dependencies for the authentication path and operator endpoints.

Security:
- Brute-force protection on authentication endpoints (per endpoint and
  client, backed by the shared rate limit store)
- Operator endpoints guarded by X-Admin-Key (constant-time comparison)
- Counters cleared after a successful authentication

Usage:
    @app.post("/auth/login", dependencies=[Depends(rate_limited("auth:login"))])
    async def login(request: Request, ...):
        ...
        await clear_rate_limit(request, "auth:login")
"""

import logging
import secrets
from collections.abc import Awaitable, Callable

from fastapi import Header, HTTPException, Request, status

from src.config import get_settings
from src.models.rate_limit import RateLimitResult
from src.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Client IP for rate limiting.

    Trusts the first X-Forwarded-For hop (the service runs behind a proxy),
    then the socket peer.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None:
        return request.client.host
    return "unknown"


def get_rate_limiter(request: Request) -> RateLimiter:
    """Rate limiter built at startup (app.state.rate_limiter)."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )
    return limiter


def _identifier(request: Request, subject: str | None) -> str:
    ip = get_client_ip(request)
    return f"{ip}:{subject.lower()}" if subject else ip


def rate_limited(
    endpoint: str,
    subject_header: str | None = None,
) -> Callable[[Request], Awaitable[RateLimitResult]]:
    """
    Dependency factory enforcing an endpoint's attempt budget.

    Args:
        endpoint: Endpoint key (e.g. auth:login)
        subject_header: Optional header naming the account being attempted
            (identifier becomes "ip:subject", limiting per account and IP)

    Returns:
        Dependency returning the RateLimitResult, or raising
        RateLimitExceededError (rendered as 429 with Retry-After)
    """

    async def dependency(request: Request) -> RateLimitResult:
        limiter = get_rate_limiter(request)
        subject = request.headers.get(subject_header) if subject_header else None
        result = await limiter.enforce(
            _identifier(request, subject),
            endpoint,
            ip_address=get_client_ip(request),
        )
        request.state.rate_limit = result
        return result

    return dependency


async def clear_rate_limit(
    request: Request, endpoint: str, subject: str | None = None
) -> None:
    """
    Reset the caller's counter after a successful authentication.

    Args:
        request: Current request (identifies the client)
        endpoint: Endpoint key passed to rate_limited()
        subject: Same subject used when the attempt was counted
    """
    limiter = get_rate_limiter(request)
    await limiter.reset_rate_limit(_identifier(request, subject), endpoint)


async def verify_admin_key(x_admin_key: str = Header(...)) -> bool:
    """
    Verify operator API key.

    Raises:
        HTTPException 403: ADMIN_API_KEY not configured (endpoints disabled)
        HTTPException 401: Key mismatch
    """
    admin_key = get_settings().admin_api_key
    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator endpoints are disabled",
        )

    if not secrets.compare_digest(x_admin_key.encode(), admin_key.encode()):
        logger.warning("Operator request rejected: invalid admin key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True
