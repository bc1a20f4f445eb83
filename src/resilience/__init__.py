"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when dependencies fail.
Retry policies absorb transient faults before they reach the breaker.
The rate limiter protects authentication endpoints from brute force.
"""

from src.resilience.circuit_breakers import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    build_circuit_registry,
    with_circuit_breaker,
)
from src.resilience.errors import (
    CircuitOpenError,
    DependencyUnavailableError,
    ErrorKind,
    ExternalServiceError,
    classify_error,
    is_client_error,
    is_retryable_error,
)
from src.resilience.external import call_external
from src.resilience.retry import (
    RetryPolicy,
    build_retry_profiles,
    make_retryable,
    with_retry,
    with_retry_profile,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "DependencyUnavailableError",
    "ErrorKind",
    "ExternalServiceError",
    "RetryPolicy",
    "build_circuit_registry",
    "build_retry_profiles",
    "call_external",
    "classify_error",
    "is_client_error",
    "is_retryable_error",
    "make_retryable",
    "with_circuit_breaker",
    "with_retry",
    "with_retry_profile",
]
