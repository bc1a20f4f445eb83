"""
Prometheus metrics for the resilience layer.

Metrics tracked:
- Request latency (histogram) and count (counter) per endpoint
- Active requests (gauge)
- Error rates (counter) by error type
- Circuit breaker state (gauge), transitions and rejections (counters)
- Retry attempts and exhausted retries (counters) per profile
- Rate limit decisions (counter) and shared-store degradation (gauge)
- Outbox outcomes (counter), batch latency (histogram), queue depth (gauge)

All series are prefixed bff_resilience_ and served by GET /metrics.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "bff_resilience_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000),
)

http_requests_total = Counter(
    "bff_resilience_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "bff_resilience_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

errors_total = Counter(
    "bff_resilience_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

# ============================================================================
# CIRCUIT BREAKER METRICS
# ============================================================================

# 0 = closed, 1 = half-open, 2 = open
CIRCUIT_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}

circuit_breaker_state = Gauge(
    "bff_resilience_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half-open, 2=open)",
    labelnames=["dependency"],
)

circuit_breaker_transitions_total = Counter(
    "bff_resilience_circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    labelnames=["dependency", "from_state", "to_state"],
)

circuit_breaker_rejections_total = Counter(
    "bff_resilience_circuit_breaker_rejections_total",
    "Calls rejected by an open circuit",
    labelnames=["dependency", "fallback"],
)

# ============================================================================
# RETRY METRICS
# ============================================================================

retry_attempts_total = Counter(
    "bff_resilience_retry_attempts_total",
    "Retries scheduled after a failed attempt",
    labelnames=["profile", "error_kind"],
)

retry_exhausted_total = Counter(
    "bff_resilience_retry_exhausted_total",
    "Calls that failed after exhausting every attempt",
    labelnames=["profile"],
)

# ============================================================================
# RATE LIMIT METRICS
# ============================================================================

rate_limit_checks_total = Counter(
    "bff_resilience_rate_limit_checks_total",
    "Rate limit checks by outcome and backing store",
    labelnames=["endpoint", "allowed", "backend"],
)

rate_limit_store_degraded = Gauge(
    "bff_resilience_rate_limit_store_degraded",
    "1 while the shared rate limit store is unreachable and the local fallback is in use",
)

# ============================================================================
# OUTBOX METRICS
# ============================================================================

outbox_events_total = Counter(
    "bff_resilience_outbox_events_total",
    "Outbox events handled by outcome (completed, retry, failed)",
    labelnames=["event_type", "outcome"],
)

outbox_events_reaped_total = Counter(
    "bff_resilience_outbox_events_reaped_total",
    "PROCESSING events reclaimed after their lease expired",
)

outbox_batch_duration_seconds = Histogram(
    "bff_resilience_outbox_batch_duration_seconds",
    "Time to process one outbox batch",
    buckets=(0.010, 0.050, 0.100, 0.500, 1.000, 5.000, 10.000, 30.000),
)

outbox_queue_depth = Gauge(
    "bff_resilience_outbox_queue_depth",
    "Outbox rows by status",
    labelnames=["status"],
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error type (validation, circuit_open, rate_limit, etc.)
        endpoint: API endpoint where error occurred
    """
    errors_total.labels(
        error_type=error_type,
        endpoint=endpoint,
    ).inc()


def track_circuit_transition(dependency: str, from_state: str, to_state: str) -> None:
    """Record a breaker transition and publish the new state."""
    circuit_breaker_transitions_total.labels(
        dependency=dependency,
        from_state=from_state,
        to_state=to_state,
    ).inc()
    set_circuit_state(dependency, to_state)


def set_circuit_state(dependency: str, state: str) -> None:
    circuit_breaker_state.labels(dependency=dependency).set(CIRCUIT_STATE_VALUES[state])


def track_circuit_rejection(dependency: str, used_fallback: bool) -> None:
    circuit_breaker_rejections_total.labels(
        dependency=dependency,
        fallback="true" if used_fallback else "false",
    ).inc()


def track_retry_attempt(profile: str, error_kind: str) -> None:
    retry_attempts_total.labels(profile=profile, error_kind=error_kind).inc()


def track_retry_exhausted(profile: str) -> None:
    retry_exhausted_total.labels(profile=profile).inc()


def track_rate_limit_check(endpoint: str, allowed: bool, backend: str) -> None:
    """
    Track a rate limit decision.

    Args:
        endpoint: Rate-limited endpoint (e.g. auth:login)
        allowed: Whether the request was allowed
        backend: redis, local (degraded) or fail_open
    """
    rate_limit_checks_total.labels(
        endpoint=endpoint,
        allowed="true" if allowed else "false",
        backend=backend,
    ).inc()


def set_rate_limit_degraded(degraded: bool) -> None:
    rate_limit_store_degraded.set(1 if degraded else 0)


def track_outbox_event(event_type: str, outcome: str) -> None:
    outbox_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_outbox_reaped(count: int) -> None:
    if count > 0:
        outbox_events_reaped_total.inc(count)


def track_outbox_batch(duration_seconds: float) -> None:
    outbox_batch_duration_seconds.observe(duration_seconds)


def update_outbox_queue_depth(counts: dict[str, int]) -> None:
    """
    Publish outbox row counts.

    Args:
        counts: Mapping of status name (pending, processing, ...) to row count
    """
    for status, count in counts.items():
        outbox_queue_depth.labels(status=status).set(count)


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
