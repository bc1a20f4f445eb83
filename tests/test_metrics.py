"""
Tests for Prometheus metrics observability.

Tests:
- Metrics endpoint returns valid Prometheus format
- Request metrics are tracked correctly
- Circuit, retry, rate limit and outbox metrics
- Error classification and endpoint normalization
"""

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from src.main import app
from src.observability.metrics import (
    generate_metrics,
    set_rate_limit_degraded,
    track_circuit_transition,
    track_error,
    track_outbox_event,
    track_rate_limit_check,
    track_request,
    track_retry_attempt,
    update_outbox_queue_depth,
)
from src.observability.middleware import classify_exception, normalize_endpoint
from src.rate_limits import RateLimitExceededError
from src.resilience.errors import CircuitOpenError, DependencyUnavailableError, ExternalServiceError


@pytest.fixture
def client():
    """Create test client (lifespan not started)."""
    return TestClient(app)


def sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_metrics_endpoint_exists(client):
    """Test that /metrics endpoint exists and returns data."""
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]
    assert len(response.content) > 0


def test_metrics_endpoint_tracks_requests(client):
    client.get("/health/liveness")

    body = client.get("/metrics").text

    assert "bff_resilience_http_requests_total" in body
    assert 'endpoint="/health/liveness"' in body


def test_exposition_lists_resilience_metrics():
    content, content_type = generate_metrics()
    body = content.decode("utf-8")

    assert content_type.startswith("text/plain")
    for name in (
        "bff_resilience_circuit_breaker_state",
        "bff_resilience_retry_attempts_total",
        "bff_resilience_rate_limit_checks_total",
        "bff_resilience_outbox_events_total",
        "bff_resilience_outbox_queue_depth",
    ):
        assert f"# HELP {name}" in body


def test_track_request():
    labels = {"method": "GET", "endpoint": "/admin/circuits", "status_code": "200"}
    before = sample("bff_resilience_http_requests_total", **labels)

    track_request("GET", "/admin/circuits", 200, 0.012)

    assert sample("bff_resilience_http_requests_total", **labels) == before + 1


def test_track_error():
    labels = {"error_type": "circuit_open", "endpoint": "/deals"}
    before = sample("bff_resilience_errors_total", **labels)

    track_error("circuit_open", "/deals")

    assert sample("bff_resilience_errors_total", **labels) == before + 1


def test_circuit_transition_updates_state_gauge():
    labels = {"dependency": "openai", "from_state": "CLOSED", "to_state": "OPEN"}
    before = sample("bff_resilience_circuit_breaker_transitions_total", **labels)

    track_circuit_transition("openai", "CLOSED", "OPEN")

    assert sample("bff_resilience_circuit_breaker_transitions_total", **labels) == before + 1
    assert sample("bff_resilience_circuit_breaker_state", dependency="openai") == 2.0

    track_circuit_transition("openai", "OPEN", "HALF_OPEN")
    assert sample("bff_resilience_circuit_breaker_state", dependency="openai") == 1.0


def test_retry_attempt():
    before = sample("bff_resilience_retry_attempts_total", profile="kernel", error_kind="server")

    track_retry_attempt("kernel", "server")

    after = sample("bff_resilience_retry_attempts_total", profile="kernel", error_kind="server")
    assert after == before + 1


def test_rate_limit_metrics():
    labels = {"endpoint": "auth:login", "allowed": "false", "backend": "local"}
    before = sample("bff_resilience_rate_limit_checks_total", **labels)

    track_rate_limit_check("auth:login", False, "local")
    set_rate_limit_degraded(True)

    assert sample("bff_resilience_rate_limit_checks_total", **labels) == before + 1
    assert sample("bff_resilience_rate_limit_store_degraded") == 1.0

    set_rate_limit_degraded(False)
    assert sample("bff_resilience_rate_limit_store_degraded") == 0.0


def test_outbox_metrics():
    labels = {"event_type": "SEND_EMAIL", "outcome": "completed"}
    before = sample("bff_resilience_outbox_events_total", **labels)

    track_outbox_event("SEND_EMAIL", "completed")
    update_outbox_queue_depth({"pending": 7, "failed": 1})

    assert sample("bff_resilience_outbox_events_total", **labels) == before + 1
    assert sample("bff_resilience_outbox_queue_depth", status="pending") == 7.0
    assert sample("bff_resilience_outbox_queue_depth", status="failed") == 1.0


class TestErrorClassification:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (CircuitOpenError("kernel", 5.0), "circuit_open"),
            (DependencyUnavailableError("kernel"), "dependency_unavailable"),
            (ExternalServiceError.from_status("openai", 502), "upstream"),
            (RateLimitExceededError("auth:login", "10.0.0.1", 5), "rate_limit"),
            (ValueError("bad"), "validation"),
            (RuntimeError("boom"), "internal"),
        ],
    )
    def test_classify_exception(self, exc, expected):
        assert classify_exception(exc) == expected

    def test_rate_limit_paths_are_normalized(self):
        assert (
            normalize_endpoint("/admin/rate-limits/auth:login/10.0.0.1")
            == "/admin/rate-limits/{endpoint}/{identifier}"
        )
        assert normalize_endpoint("/admin/circuits") == "/admin/circuits"
