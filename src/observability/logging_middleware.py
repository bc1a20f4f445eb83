"""
Per-request log context and access logging.

Each request runs inside a RequestContext built from its X-Request-ID and
X-Trace-ID headers (generated when absent) and the client IP that rate limits
are keyed on. Both IDs are echoed back on the response.
"""

import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.auth.dependencies import get_client_ip
from src.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)

# Probes and scrapes are not access-logged
EXCLUDED_PATHS = {
    "/health/liveness",
    "/health/readiness",
    "/metrics",
}


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        started = time.perf_counter()

        with RequestContext(
            client_ip=get_client_ip(request),
            trace_id=request.headers.get("x-trace-id"),
            request_id=request.headers.get("x-request-id"),
        ) as ctx:
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "Unhandled error while serving request",
                    method=request.method,
                    path=path,
                    latency_ms=_elapsed_ms(started),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            if path not in EXCLUDED_PATHS:
                logger.info(
                    "Request served",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    latency_ms=_elapsed_ms(started),
                )

            response.headers["X-Request-ID"] = ctx.request_id
            response.headers["X-Trace-ID"] = ctx.trace_id
            return response
