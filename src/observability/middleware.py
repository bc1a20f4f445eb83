"""
HTTP metrics middleware.

PrometheusMiddleware times every request and keeps the in-flight gauge.
ErrorTrackingMiddleware counts exceptions that escaped every exception
handler, grouped by resilience error class.
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)
from src.rate_limits import RateLimitExceededError
from src.resilience.errors import (
    CircuitOpenError,
    DependencyUnavailableError,
    ExternalServiceError,
)

logger = logging.getLogger(__name__)

# /admin/rate-limits/{endpoint}/{identifier} carries user identifiers
_RATE_LIMIT_PATH = re.compile(r"^/admin/rate-limits/[^/]+/[^/]+$")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /admin/rate-limits/auth:login/10.0.0.1 -> /admin/rate-limits/{endpoint}/{identifier}
        /admin/circuits -> /admin/circuits (unchanged)
    """
    if _RATE_LIMIT_PATH.match(path):
        return "/admin/rate-limits/{endpoint}/{identifier}"
    return path


def classify_exception(exc: Exception) -> str:
    """
    Classify error into category.

    Args:
        exc: Exception instance

    Returns:
        str: circuit_open, dependency_unavailable, upstream, rate_limit,
        validation or internal
    """
    if isinstance(exc, CircuitOpenError):
        return "circuit_open"
    if isinstance(exc, DependencyUnavailableError):
        return "dependency_unavailable"
    if isinstance(exc, ExternalServiceError):
        return "upstream"
    if isinstance(exc, RateLimitExceededError):
        return "rate_limit"
    if isinstance(exc, ValueError):
        return "validation"
    return "internal"


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        in_flight = http_requests_active.labels(method=method, endpoint=endpoint)

        in_flight.inc()
        started = time.perf_counter()
        # Stays 500 when the handler raises
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            in_flight.dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=time.perf_counter() - started,
            )


class ErrorTrackingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            error_type = classify_exception(exc)
            logger.error(
                "Unhandled %s error on %s", error_type, request.url.path, exc_info=True
            )
            track_error(error_type=error_type, endpoint=normalize_endpoint(request.url.path))
            raise
