"""
FastAPI application for the BFF resilience layer.

Provides:
- Circuit breakers and retry profiles for kernel, OpenAI, SendGrid and n8n
- Brute-force protection for authentication endpoints (Redis, local fallback)
- Transactional outbox worker for emails, notifications and webhooks
- Operator endpoints, health probes and Prometheus metrics
"""

import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.clients.messaging import EmailSender, WebhookTrigger
from src.clients.upstream import build_upstream_clients
from src.config import get_settings
from src.observability.health import (
    LivenessResponse,
    ReadinessResponse,
    get_health_checker,
)
from src.observability.logging import configure_logging, get_logger
from src.observability.logging_middleware import StructuredLoggingMiddleware
from src.observability.metrics import generate_metrics, track_error
from src.observability.middleware import (
    ErrorTrackingMiddleware,
    PrometheusMiddleware,
    classify_exception,
    normalize_endpoint,
)
from src.outbox.handlers import build_default_handlers
from src.outbox.worker import OutboxWorker
from src.rate_limits import RateLimitExceededError, operator_limiter
from src.resilience.circuit_breakers import build_circuit_registry
from src.resilience.errors import DependencyUnavailableError, ExternalServiceError
from src.resilience.rate_limiter import RateLimiter
from src.resilience.retry import build_retry_profiles
from src.routers import admin_router
from src.storage.database import ResilienceDatabase

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wire the resilience components onto app.state and tear them down on exit.

    - Open the outbox/audit database
    - Build circuit breakers and retry profiles
    - Connect the rate limiter to its shared store
    - Build upstream clients and start the outbox worker
    """
    settings = get_settings()
    settings.validate_configuration()

    logger.info("Starting resilience layer", environment=settings.logging.environment)

    database: ResilienceDatabase | None = None
    rate_limiter: RateLimiter | None = None
    upstream_clients: dict = {}
    outbox_worker: OutboxWorker | None = None

    try:
        logger.info("Initializing database...", path=settings.database.path)
        database = ResilienceDatabase(settings.database.path)
        await database.initialize()
        logger.info("✓ Database ready")

        circuit_registry = build_circuit_registry(settings.circuit)
        retry_profiles = build_retry_profiles(settings.retry)
        logger.info(
            "✓ Circuit breakers and retry profiles configured",
            circuits=circuit_registry.names(),
            retry_profiles=sorted(retry_profiles),
        )

        rate_limiter = RateLimiter(settings.rate_limit, database=database)
        await rate_limiter.connect()
        rate_limiter.start()
        logger.info("✓ Rate limiter ready", use_redis=settings.rate_limit.use_redis)

        upstream_clients = build_upstream_clients(
            circuit_registry, retry_profiles, settings.upstream
        )
        handlers = build_default_handlers(
            EmailSender(upstream_clients["sendgrid"], settings.upstream.email_from),
            WebhookTrigger(upstream_clients["n8n"]),
        )
        outbox_worker = OutboxWorker(
            database,
            handlers,
            settings.outbox,
            db_policy=retry_profiles.get("database"),
        )
        if settings.outbox.enabled:
            outbox_worker.start()
        else:
            logger.warning("Outbox worker disabled - events will accumulate as PENDING")

        app.state.database = database
        app.state.circuit_registry = circuit_registry
        app.state.retry_profiles = retry_profiles
        app.state.rate_limiter = rate_limiter
        app.state.upstream_clients = upstream_clients
        app.state.outbox_worker = outbox_worker

        logger.info("Resilience layer ready")

        yield

    except Exception as e:
        logger.error("Resilience layer failed to start", error=str(e), exc_info=True)
        raise

    finally:
        logger.info("Stopping resilience layer")

        if outbox_worker is not None:
            await outbox_worker.stop()
        if rate_limiter is not None:
            await rate_limiter.close()
            logger.info("✓ Rate limiter closed")
        for client in upstream_clients.values():
            await client.close()
        if database is not None:
            database.close()
            logger.info("✓ Database closed")

        logger.info("Resilience layer stopped")


# Create FastAPI app
app = FastAPI(
    title="BFF Resilience Layer",
    description="Circuit breakers, retries, rate limiting and outbox delivery for the BFF",
    version=settings.logging.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Operator endpoint throttling
app.state.limiter = operator_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Order matters (processed in reverse order of registration):
# 1. ErrorTrackingMiddleware (innermost) - Classifies unhandled errors
# 2. PrometheusMiddleware - Tracks metrics
# 3. StructuredLoggingMiddleware (outermost) - Sets request context
app.add_middleware(ErrorTrackingMiddleware)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(StructuredLoggingMiddleware)

app.include_router(admin_router)


def _retry_after_header(seconds: float | None) -> dict[str, str]:
    if seconds is None:
        return {}
    return {"Retry-After": str(max(1, math.ceil(seconds)))}


@app.exception_handler(DependencyUnavailableError)
async def dependency_unavailable_handler(request: Request, exc: DependencyUnavailableError):
    """Circuit open or dependency known down: 503 with Retry-After when known."""
    track_error(classify_exception(exc), normalize_endpoint(request.url.path))
    logger.warning(
        "Dependency unavailable",
        path=request.url.path,
        dependency=exc.dependency,
        code=exc.code,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable", "code": exc.code},
        headers=_retry_after_header(getattr(exc, "retry_after_seconds", None)),
    )


@app.exception_handler(ExternalServiceError)
async def external_service_error_handler(request: Request, exc: ExternalServiceError):
    """Upstream call failed after retries."""
    track_error(classify_exception(exc), normalize_endpoint(request.url.path))
    logger.error(
        "Upstream call failed",
        path=request.url.path,
        dependency=exc.dependency,
        error_kind=exc.kind.value,
        upstream_status=exc.status,
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": "Upstream service error", "code": exc.kind.value.upper()},
    )


@app.exception_handler(RateLimitExceededError)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError):
    """Brute-force protection tripped: 429 with Retry-After."""
    track_error(classify_exception(exc), normalize_endpoint(request.url.path))
    logger.warning("Rate limit exceeded", path=request.url.path, endpoint=exc.endpoint)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "detail": "Too many attempts. Please try again later.",
            "code": exc.code,
            "retry_after_seconds": exc.retry_after_seconds,
        },
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


# Health check endpoints


@app.get(
    "/health/liveness",
    response_model=LivenessResponse,
    tags=["Health"],
    summary="Process liveness",
)
async def liveness_probe():
    """Always 200 unless the process is dead. No I/O."""
    return await get_health_checker().check_liveness()


@app.get(
    "/health/readiness",
    response_model=ReadinessResponse,
    tags=["Health"],
    summary="Dependency readiness",
    responses={
        200: {"description": "Service is ready (healthy or degraded)"},
        503: {"description": "Service is not ready"},
    },
)
async def readiness_probe(request: Request, response: Response):
    """503 only when the outbox database is unreachable."""
    readiness = await get_health_checker().check_readiness(
        database=getattr(request.app.state, "database", None),
        rate_limiter=getattr(request.app.state, "rate_limiter", None),
        circuit_registry=getattr(request.app.state, "circuit_registry", None),
    )

    if not readiness.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    logger.debug(
        "Readiness evaluated",
        ready=readiness.ready,
        status=readiness.status.value,
    )
    return readiness


@app.get("/metrics", tags=["System"])
async def metrics():
    """
    Prometheus exposition.

    Includes circuit state and transitions, retry attempts, rate limit
    decisions and backend, outbox outcomes and queue depth.
    """
    content, content_type = generate_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.logging.service_name,
        "version": settings.logging.service_version,
        "docs": "/docs",
        "health": "/health/readiness",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        log_level="info",
    )
