"""
Tests for dependency error classification.
"""

import asyncio
import sqlite3

import httpx
import pytest

from src.resilience.errors import (
    CircuitOpenError,
    DependencyUnavailableError,
    ErrorKind,
    ExternalServiceError,
    classify_error,
    describe_error,
    is_client_error,
    is_retryable_error,
    is_transient_database_error,
    kind_from_shape,
    kind_from_status,
)


@pytest.mark.parametrize(
    "status,kind",
    [
        (500, ErrorKind.SERVER),
        (503, ErrorKind.SERVER),
        (429, ErrorKind.RATE_LIMITED),
        (401, ErrorKind.AUTHORIZATION),
        (403, ErrorKind.AUTHORIZATION),
        (400, ErrorKind.VALIDATION),
        (422, ErrorKind.VALIDATION),
        (404, ErrorKind.CLIENT),
        (302, ErrorKind.UNKNOWN),
    ],
)
def test_kind_from_status(status, kind):
    assert kind_from_status(status) is kind


def test_network_code_wins_over_status():
    assert kind_from_shape(status=400, code="ECONNRESET") is ErrorKind.NETWORK


def test_upstream_transient_codes_are_server_errors():
    assert kind_from_shape(code="KERNEL_UNAVAILABLE") is ErrorKind.SERVER
    assert kind_from_shape(error_type="openai_api_error") is ErrorKind.SERVER


def test_shape_without_status_or_code_is_unknown():
    assert kind_from_shape() is ErrorKind.UNKNOWN


def test_transport_errors_are_network():
    request = httpx.Request("GET", "http://kernel/deals")

    assert classify_error(httpx.ConnectTimeout("timed out", request=request)) is ErrorKind.NETWORK
    assert classify_error(ConnectionResetError()) is ErrorKind.NETWORK
    assert classify_error(asyncio.TimeoutError()) is ErrorKind.NETWORK


def test_http_status_error_uses_response_status():
    request = httpx.Request("GET", "http://kernel/deals")
    response = httpx.Response(502, request=request)
    error = httpx.HTTPStatusError("bad gateway", request=request, response=response)

    assert classify_error(error) is ErrorKind.SERVER


def test_circuit_open_is_unavailable_and_not_retried():
    error = CircuitOpenError("openai", retry_after_seconds=12.0)

    assert isinstance(error, DependencyUnavailableError)
    assert classify_error(error) is ErrorKind.UNAVAILABLE
    assert not is_retryable_error(error)
    assert error.code == "CIRCUIT_OPEN"
    assert "openai" in str(error)


def test_retryable_and_client_errors_are_disjoint():
    server = ExternalServiceError.from_status("kernel", 503)
    throttled = ExternalServiceError.from_status("openai", 429)
    invalid = ExternalServiceError.from_status("kernel", 422)

    assert is_retryable_error(server)
    assert is_retryable_error(throttled)
    assert not is_retryable_error(invalid)
    assert is_client_error(invalid)
    assert not is_client_error(throttled)


def test_unknown_exceptions_are_not_retried():
    assert not is_retryable_error(RuntimeError("boom"))
    assert not is_client_error(RuntimeError("boom"))


def test_transient_database_errors():
    assert is_transient_database_error(sqlite3.OperationalError("database is locked"))
    assert not is_transient_database_error(sqlite3.OperationalError("no such table: x"))
    assert not is_transient_database_error(sqlite3.IntegrityError("CHECK constraint failed"))


def test_describe_error():
    error = ExternalServiceError.from_status("sendgrid", 500, code="INTERNAL")

    assert describe_error(error) == {
        "error_type": "ExternalServiceError",
        "error_kind": "server",
        "status": 500,
        "code": "INTERNAL",
    }
