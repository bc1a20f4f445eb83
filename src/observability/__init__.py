"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- health.py: Liveness and readiness probes
"""

from src.observability.metrics import (
    track_circuit_transition,
    track_error,
    track_outbox_event,
    track_rate_limit_check,
    track_request,
    track_retry_attempt,
)

__all__ = [
    "track_request",
    "track_error",
    "track_circuit_transition",
    "track_retry_attempt",
    "track_rate_limit_check",
    "track_outbox_event",
]
