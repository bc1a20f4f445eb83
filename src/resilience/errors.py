"""
Failure taxonomy for calls to external dependencies.

Every transport failure is reduced to a closed ErrorKind at the boundary;
retry and rate-limit classifiers only ever look at the kind.

    NETWORK        connection refused/reset, DNS, timeouts       retryable
    SERVER         5xx                                           retryable
    RATE_LIMITED   429                                           retryable
    CLIENT         other 4xx                                     not retryable
    VALIDATION     rejected payload (400/422, validation codes)  not retryable
    AUTHORIZATION  401/403, auth codes                           not retryable
    UNAVAILABLE    circuit open / dependency unavailable         not retryable
    UNKNOWN        anything else                                 not retryable
"""

import asyncio
import sqlite3
from enum import Enum
from typing import Any

import httpx


class ErrorKind(str, Enum):
    """Closed classification of dependency failures."""

    NETWORK = "network"
    SERVER = "server"
    RATE_LIMITED = "rate_limited"
    CLIENT = "client"
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.RATE_LIMITED})
CLIENT_KINDS = frozenset({ErrorKind.CLIENT, ErrorKind.VALIDATION, ErrorKind.AUTHORIZATION})

NETWORK_ERROR_CODES = frozenset(
    {"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ECONNRESET", "EAI_AGAIN", "EPIPE"}
)
VALIDATION_ERROR_CODES = frozenset({"VALIDATION_FAILED", "INVALID_REQUEST", "BAD_REQUEST"})
AUTH_ERROR_CODES = frozenset({"AUTH_REQUIRED", "FORBIDDEN"})
UPSTREAM_TRANSIENT_CODES = frozenset(
    {"KERNEL_UNAVAILABLE", "OPENAI_RATE_LIMIT", "OPENAI_API_ERROR"}
)


class ExternalServiceError(Exception):
    """A call to an external dependency failed."""

    def __init__(
        self,
        dependency: str,
        kind: ErrorKind,
        message: str | None = None,
        status: int | None = None,
        code: str | None = None,
    ):
        self.dependency = dependency
        self.kind = kind
        self.status = status
        self.code = code
        super().__init__(message or f"{dependency} call failed ({kind.value})")

    @classmethod
    def from_status(
        cls, dependency: str, status: int, message: str | None = None, code: str | None = None
    ) -> "ExternalServiceError":
        return cls(
            dependency,
            kind_from_shape(status=status, code=code),
            message=message or f"{dependency} responded with HTTP {status}",
            status=status,
            code=code,
        )


class DependencyUnavailableError(Exception):
    """A dependency is known to be unavailable; the call was not attempted."""

    code = "DEPENDENCY_UNAVAILABLE"

    def __init__(self, dependency: str, message: str | None = None):
        self.dependency = dependency
        super().__init__(message or f"Service {dependency} unavailable")


class CircuitOpenError(DependencyUnavailableError):
    """Circuit breaker is rejecting calls to a dependency."""

    code = "CIRCUIT_OPEN"

    def __init__(self, dependency: str, retry_after_seconds: float | None = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(dependency, f"Service {dependency} unavailable (circuit open)")


def kind_from_status(status: int) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.SERVER
    if status in (401, 403):
        return ErrorKind.AUTHORIZATION
    if status in (400, 422):
        return ErrorKind.VALIDATION
    if 400 <= status < 500:
        return ErrorKind.CLIENT
    return ErrorKind.UNKNOWN


def kind_from_shape(
    status: int | None = None, code: str | None = None, error_type: str | None = None
) -> ErrorKind:
    """
    Normalise a loosely-typed {status, code, type} error shape.

    Codes take precedence over the status so a transport-level code is never
    masked by a generic status.
    """
    code = (code or "").upper()
    error_type = (error_type or "").upper()

    if code in NETWORK_ERROR_CODES:
        return ErrorKind.NETWORK
    if code in UPSTREAM_TRANSIENT_CODES or error_type in UPSTREAM_TRANSIENT_CODES:
        return ErrorKind.SERVER
    if code in VALIDATION_ERROR_CODES:
        return ErrorKind.VALIDATION
    if code in AUTH_ERROR_CODES:
        return ErrorKind.AUTHORIZATION
    if status is not None:
        return kind_from_status(status)
    return ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify any exception raised by a unit of work.

    Args:
        error: Exception to classify

    Returns:
        ErrorKind: Classification used by retry and reporting
    """
    if isinstance(error, ExternalServiceError):
        return error.kind
    if isinstance(error, DependencyUnavailableError):
        return ErrorKind.UNAVAILABLE
    if isinstance(error, httpx.HTTPStatusError):
        return kind_from_status(error.response.status_code)
    if isinstance(error, httpx.TransportError):
        # Covers timeouts, connect errors, protocol errors
        return ErrorKind.NETWORK
    if isinstance(error, (asyncio.TimeoutError, OSError)):
        # ConnectionError and the builtin TimeoutError are both OSErrors
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def is_retryable_error(error: BaseException) -> bool:
    """Network faults, 5xx and 429 are worth another attempt."""
    return classify_error(error) in RETRYABLE_KINDS


def is_client_error(error: BaseException) -> bool:
    """4xx (except 429), validation and authorization failures."""
    return classify_error(error) in CLIENT_KINDS


def is_transient_database_error(error: BaseException) -> bool:
    """SQLite lock contention clears on its own; everything else does not."""
    if isinstance(error, sqlite3.OperationalError):
        message = str(error).lower()
        return "locked" in message or "busy" in message
    return False


def describe_error(error: BaseException) -> dict[str, Any]:
    """Structured fields for logging a dependency failure."""
    return {
        "error_type": type(error).__name__,
        "error_kind": classify_error(error).value,
        "status": getattr(error, "status", None),
        "code": getattr(error, "code", None),
    }
