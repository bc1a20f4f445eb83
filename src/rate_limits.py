"""
Rate limiting configuration.

Two layers:
- Brute-force protection for authentication endpoints: per (endpoint,
  identifier) attempt counters in Redis (see src/resilience/rate_limiter.py)
- Request throttling for operator endpoints: slowapi, keyed by client IP

Endpoint profiles (attempts per window):
    auth:login            5 / 15 min
    auth:signup           5 / 15 min
    lp-portal:session     5 / 15 min
    magic-links:validate  5 / 15 min
    magic-links:create    10 / hour
    invitations:bulk      20 / hour

Unknown endpoints use RATE_LIMIT_MAX_ATTEMPTS / RATE_LIMIT_WINDOW_SECONDS.
"""

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address

from src.config import EndpointLimit, RateLimitSettings, get_settings

logger = logging.getLogger(__name__)


def get_endpoint_limit(endpoint: str, settings: RateLimitSettings | None = None) -> EndpointLimit:
    """
    Get the attempt budget for an endpoint.

    Args:
        endpoint: Endpoint key (e.g. auth:login)
        settings: Rate limit settings (defaults to global settings)

    Returns:
        EndpointLimit for the endpoint, or the global default
    """
    if settings is None:
        settings = get_settings().rate_limit

    limit = settings.endpoint_limits.get(endpoint)
    if limit is None:
        logger.debug(f"No rate limit profile for {endpoint} - using global default")
        return EndpointLimit(
            max_attempts=settings.max_attempts,
            window_seconds=settings.window_seconds,
        )
    return limit


def get_operator_rate_limit() -> str:
    """slowapi limit string for operator endpoints (e.g. "30/minute")."""
    return get_settings().service.admin_rate_limit


# Operator endpoints are throttled per client IP
operator_limiter = Limiter(key_func=get_remote_address)


class RateLimitExceededError(Exception):
    """Raised when an identifier has used up its attempts for an endpoint."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        endpoint: str,
        identifier: str,
        max_attempts: int,
        retry_after_seconds: int = 60,
    ):
        self.endpoint = endpoint
        self.identifier = identifier
        self.max_attempts = max_attempts
        self.retry_after_seconds = retry_after_seconds

        super().__init__(
            f"Rate limit exceeded on {endpoint}: {max_attempts} attempts. "
            f"Retry after {retry_after_seconds}s."
        )
