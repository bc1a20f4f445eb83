"""
Composition of breaker and retry for one external call.

The breaker wraps the retried call, so a single transient error is absorbed
by the retry executor and only a retry-exhausted failure counts towards
opening the circuit.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from src.resilience.circuit_breakers import CircuitBreaker, with_circuit_breaker
from src.resilience.retry import RetryHook, RetryPolicy, with_retry

T = TypeVar("T")


async def call_external(
    breaker: CircuitBreaker,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    fallback: Callable[[], Awaitable[T] | T] | None = None,
    on_retry: RetryHook | None = None,
) -> T:
    """
    Call a dependency through its circuit breaker, retrying transient failures.

    Args:
        breaker: Breaker guarding the dependency
        fn: Async callable performing one attempt
        policy: Retry policy (None = single attempt)
        fallback: Used when the circuit is open
        on_retry: Hook called before each backoff sleep

    Raises:
        CircuitOpenError: Circuit open and no fallback
        Exception: Last error from fn once retries are exhausted
    """
    if policy is None:
        return await with_circuit_breaker(breaker, fn, fallback=fallback)

    async def retried() -> T:
        return await with_retry(fn, policy, on_retry=on_retry)

    return await with_circuit_breaker(breaker, retried, fallback=fallback)
