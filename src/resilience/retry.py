"""
Retry executor for calls to external dependencies.

Wraps tenacity with named policies so every call site retries the same way:
bounded attempts, exponential backoff with optional jitter, and a predicate
that decides which failures are transient.

Attempt semantics:
- fn is invoked at most max_attempts times
- A non-retryable error is re-raised after the first attempt, untouched
- After the last attempt the last error is re-raised, untouched
- No sleep happens after the final attempt
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from functools import wraps
from typing import Any, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from src.config import RetryProfileSettings, RetrySettings, get_settings
from src.observability.metrics import track_retry_attempt, track_retry_exhausted
from src.resilience.backoff import wait_backoff
from src.resilience.errors import (
    classify_error,
    is_retryable_error,
    is_transient_database_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATABASE_PROFILE = "database"

# on_retry(error, attempt_number), called before each sleep
RetryHook = Callable[[BaseException, int], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters and retry predicate for one class of calls."""

    name: str = "default"
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    factor: float = 2.0
    jitter: bool = True
    retry_predicate: Callable[[BaseException], bool] = is_retryable_error
    attempt_timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: RetryProfileSettings,
        retry_predicate: Callable[[BaseException], bool] = is_retryable_error,
    ) -> "RetryPolicy":
        return cls(
            name=name,
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            factor=settings.factor,
            jitter=settings.jitter,
            retry_predicate=retry_predicate,
            attempt_timeout_seconds=settings.attempt_timeout_seconds,
        )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    on_retry: RetryHook | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """
    Execute fn with retries.

    Args:
        fn: Async callable performing one attempt
        policy: Retry policy (defaults to RetryPolicy())
        on_retry: Hook called before each backoff sleep
        sleep: Async sleep function (injectable for tests)
        rand: Jitter source (injectable for tests)

    Returns:
        Result of the first successful attempt

    Raises:
        The error of the last attempt, unchanged
    """
    policy = policy or RetryPolicy()
    attempts = 0

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        if policy.attempt_timeout_seconds is None:
            return await fn()
        return await asyncio.wait_for(fn(), timeout=policy.attempt_timeout_seconds)

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        kind = classify_error(error)

        logger.warning(
            f"Retry {retry_state.attempt_number}/{policy.max_attempts} for "
            f"{policy.name} after {type(error).__name__}: {error}",
            extra={
                "retry_profile": policy.name,
                "attempt": retry_state.attempt_number,
                "max_attempts": policy.max_attempts,
                "delay_seconds": round(delay, 3),
                "error_kind": kind.value,
            },
        )
        track_retry_attempt(policy.name, kind.value)

        if on_retry is None:
            return
        # A broken hook must not replace the call's own error
        try:
            on_retry(error, retry_state.attempt_number)
        except Exception:
            logger.exception(
                f"on_retry hook failed for {policy.name}",
                extra={"retry_profile": policy.name, "attempt": retry_state.attempt_number},
            )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_backoff(
            policy.base_delay_seconds,
            factor=policy.factor,
            max_delay=policy.max_delay_seconds,
            jitter=policy.jitter,
            rand=rand,
        ),
        retry=retry_if_exception(policy.retry_predicate),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        return await retrying(attempt)
    except Exception as e:
        if attempts >= policy.max_attempts and policy.max_attempts > 1 and policy.retry_predicate(e):
            logger.error(
                f"All {policy.max_attempts} attempts failed for {policy.name}: {e}",
                extra={
                    "retry_profile": policy.name,
                    "max_attempts": policy.max_attempts,
                    "error_kind": classify_error(e).value,
                },
            )
            track_retry_exhausted(policy.name)
        raise


def build_retry_profiles(settings: RetrySettings | None = None) -> dict[str, RetryPolicy]:
    """
    Build named policies from configuration.

    The database profile retries lock contention only; every other profile
    retries network faults, 5xx and 429.
    """
    if settings is None:
        settings = get_settings().retry

    profiles: dict[str, RetryPolicy] = {}
    for name, profile in settings.profiles.items():
        predicate = is_transient_database_error if name == DATABASE_PROFILE else is_retryable_error
        profiles[name] = RetryPolicy.from_settings(name, profile, retry_predicate=predicate)
    return profiles


# Global profile table (lazy-loaded)
_profiles: dict[str, RetryPolicy] | None = None


def get_retry_profiles() -> dict[str, RetryPolicy]:
    global _profiles
    if _profiles is None:
        _profiles = build_retry_profiles()
    return _profiles


def get_retry_policy(
    profile: str, profiles: dict[str, RetryPolicy] | None = None
) -> RetryPolicy:
    """
    Look up a named policy.

    Raises:
        ValueError: If the profile does not exist
    """
    if profiles is None:
        profiles = get_retry_profiles()
    try:
        return profiles[profile]
    except KeyError:
        raise ValueError(f"Unknown retry profile: {profile}") from None


async def with_retry_profile(
    profile: str,
    fn: Callable[[], Awaitable[T]],
    profiles: dict[str, RetryPolicy] | None = None,
    on_retry: RetryHook | None = None,
    **overrides: Any,
) -> T:
    """
    Execute fn with a named retry profile.

    Args:
        profile: kernel, openai, sendgrid, n8n or database
        fn: Async callable performing one attempt
        profiles: Profile table (defaults to the configured profiles)
        on_retry: Hook called before each backoff sleep
        **overrides: RetryPolicy fields to override for this call

    Raises:
        ValueError: If the profile does not exist
    """
    policy = get_retry_policy(profile, profiles)
    if overrides:
        policy = replace(policy, **overrides)
    return await with_retry(fn, policy, on_retry=on_retry)


def make_retryable(
    fn: Callable[..., Awaitable[T]],
    policy: RetryPolicy | None = None,
    on_retry: RetryHook | None = None,
) -> Callable[..., Awaitable[T]]:
    """
    Wrap an async function so every call goes through with_retry.

    Example:
        fetch_deal = make_retryable(kernel.get_deal, policy)
        deal = await fetch_deal(deal_id)
    """

    @wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        return await with_retry(lambda: fn(*args, **kwargs), policy, on_retry=on_retry)

    return wrapper
