"""
Circuit breakers for external dependencies.

Prevents cascade failures when the kernel API, the AI provider, the email
provider or the workflow engine experience outages.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Cooldown elapsed, requests pass through to probe recovery

Configuration (per dependency):
- failure_threshold: Failures before opening circuit (default: 5)
- success_threshold: Consecutive half-open successes before closing (default: 2)
- open_duration_seconds: Time circuit stays open before half-open (default: 30)
- reset_window_seconds: Quiet period after which failures are forgotten (default: 60)

Breakers wrap the already-retried call, so only a retry-exhausted failure
counts towards opening the circuit.
"""

import inspect
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from src.config import BreakerProfile, CircuitBreakerSettings, get_settings
from src.observability.metrics import (
    set_circuit_state,
    track_circuit_rejection,
    track_circuit_transition,
)
from src.resilience.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker."""

    failure_threshold: int = 5
    success_threshold: int = 2
    open_duration_seconds: float = 30.0
    reset_window_seconds: float = 60.0

    @classmethod
    def from_profile(cls, profile: BreakerProfile) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=profile.failure_threshold,
            success_threshold=profile.success_threshold,
            open_duration_seconds=profile.open_duration_seconds,
            reset_window_seconds=profile.reset_window_seconds,
        )


def _as_datetime(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, UTC).isoformat()


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a breaker (for dashboards and tests)."""

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None
    next_attempt_time: float | None
    last_state_change: float
    config: CircuitBreakerConfig

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": _as_datetime(self.last_failure_time),
            "next_attempt_time": _as_datetime(self.next_attempt_time),
            "last_state_change": _as_datetime(self.last_state_change),
            "config": asdict(self.config),
        }


StateListener = Callable[["CircuitBreaker", CircuitState, CircuitState], None]


class CircuitBreaker:
    """
    Per-dependency circuit breaker.

    The OPEN -> HALF_OPEN transition is lazy: it happens on the first
    can_execute() call after the cooldown, not on a timer.

    Thread-safe: sync routes run in a threadpool, so every state mutation is
    done under a lock.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
        listeners: list[StateListener] | None = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Dependency name (used in logs, metrics and errors)
            config: Thresholds (defaults if omitted)
            clock: Wall-clock source in epoch seconds (injectable for tests)
            listeners: Callbacks invoked as listener(breaker, old_state, new_state)
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._listeners = list(listeners or [])
        self._lock = threading.RLock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._next_attempt_time: float | None = None
        self._last_state_change = clock()

    @property
    def state(self) -> CircuitState:
        """Current state (does not advance OPEN -> HALF_OPEN)."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._success_count

    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED

    def is_half_open(self) -> bool:
        return self.state is CircuitState.HALF_OPEN

    def can_execute(self) -> bool:
        """
        Decide whether a call may go through.

        Returns:
            bool: False only while OPEN and the cooldown has not elapsed
        """
        with self._lock:
            now = self._clock()

            if self._state is CircuitState.CLOSED:
                self._forgive_stale_failures(now)
                return True

            if self._state is CircuitState.OPEN:
                if self._next_attempt_time is not None and now >= self._next_attempt_time:
                    self._success_count = 0
                    self._set_state(CircuitState.HALF_OPEN)
                    logger.warning(
                        f"Circuit breaker HALF-OPEN: {self.name} (testing recovery)",
                        extra={"breaker_name": self.name, "state": "HALF_OPEN"},
                    )
                    return True
                return False

            return True

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._failure_count = 0

            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._success_count = 0
                    self._set_state(CircuitState.CLOSED)
                    logger.info(
                        f"Circuit breaker CLOSED: {self.name} (service recovered)",
                        extra={
                            "breaker_name": self.name,
                            "state": "CLOSED",
                            "success_threshold": self.config.success_threshold,
                        },
                    )

    def record_failure(self) -> None:
        """Record a failed call (after retries, if any)."""
        with self._lock:
            now = self._clock()
            if self._state is CircuitState.CLOSED:
                self._forgive_stale_failures(now)

            self._failure_count += 1
            self._last_failure_time = now
            self._success_count = 0

            if self._state is CircuitState.HALF_OPEN:
                self._trip(now)
                logger.error(
                    f"Circuit breaker OPENED: {self.name} (failed in half-open)",
                    extra={
                        "breaker_name": self.name,
                        "fail_count": self._failure_count,
                        "state": "OPEN",
                    },
                )
            elif self._failure_count >= self.config.failure_threshold:
                was_open = self._state is CircuitState.OPEN
                self._trip(now)
                if not was_open:
                    logger.error(
                        f"Circuit breaker OPENED: {self.name} (threshold exceeded)",
                        extra={
                            "breaker_name": self.name,
                            "fail_count": self._failure_count,
                            "fail_max": self.config.failure_threshold,
                            "state": "OPEN",
                        },
                    )

    def retry_after_seconds(self) -> float | None:
        """Seconds until an OPEN breaker admits a probe (None unless OPEN)."""
        with self._lock:
            if self._state is not CircuitState.OPEN or self._next_attempt_time is None:
                return None
            return max(0.0, self._next_attempt_time - self._clock())

    def get_state(self) -> CircuitSnapshot:
        """Snapshot of counters, timestamps and configuration."""
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
                last_state_change=self._last_state_change,
                config=self.config,
            )

    def reset(self) -> None:
        """Force the breaker back to CLOSED (manual recovery)."""
        with self._lock:
            self._set_state(CircuitState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._next_attempt_time = None
        logger.info(f"Circuit breaker {self.name} manually reset")

    def _forgive_stale_failures(self, now: float) -> None:
        if (
            self._failure_count
            and self._last_failure_time is not None
            and now - self._last_failure_time > self.config.reset_window_seconds
        ):
            logger.debug(
                f"Circuit breaker {self.name}: forgiving {self._failure_count} stale failures"
            )
            self._failure_count = 0

    def _trip(self, now: float) -> None:
        self._next_attempt_time = now + self.config.open_duration_seconds
        self._set_state(CircuitState.OPEN)

    def _set_state(self, new_state: CircuitState) -> None:
        if self._state is new_state:
            return

        old_state = self._state
        self._state = new_state
        self._last_state_change = self._clock()

        for listener in self._listeners:
            try:
                listener(self, old_state, new_state)
            except Exception:
                logger.exception(f"Circuit breaker listener failed for {self.name}")


def publish_state_change(
    breaker: CircuitBreaker, old_state: CircuitState, new_state: CircuitState
) -> None:
    """Listener exporting transitions to Prometheus."""
    track_circuit_transition(breaker.name, old_state.value, new_state.value)


class CircuitBreakerRegistry:
    """
    Named breakers, one per dependency, for the process lifetime.

    Built once at startup and passed to call sites; tests build their own.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        listeners: list[StateListener] | None = None,
    ):
        self._clock = clock
        self._listeners = list(listeners or [])
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def register(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """
        Create the breaker for a dependency.

        Raises:
            ValueError: If a breaker with this name already exists
        """
        with self._lock:
            if name in self._breakers:
                raise ValueError(f"Circuit breaker '{name}' is already registered")
            breaker = CircuitBreaker(
                name, config=config, clock=self._clock, listeners=self._listeners
            )
            self._breakers[name] = breaker
        set_circuit_state(name, CircuitState.CLOSED.value)
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        try:
            return self._breakers[name]
        except KeyError:
            raise KeyError(f"No circuit breaker registered for '{name}'") from None

    def __getitem__(self, name: str) -> CircuitBreaker:
        return self.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __iter__(self) -> Iterator[CircuitBreaker]:
        return iter(list(self._breakers.values()))

    def __len__(self) -> int:
        return len(self._breakers)

    def names(self) -> list[str]:
        return list(self._breakers)

    def get_all_states(self) -> list[CircuitSnapshot]:
        """Snapshots of every breaker, in registration order."""
        return [breaker.get_state() for breaker in self]

    def reset_all(self) -> None:
        """
        Reset all circuit breakers to CLOSED state.

        Use for testing or manual recovery.
        """
        for breaker in self:
            breaker.reset()
        logger.info("All circuit breakers reset to CLOSED state")


def build_circuit_registry(
    settings: CircuitBreakerSettings | None = None,
    clock: Callable[[], float] = time.time,
) -> CircuitBreakerRegistry:
    """
    Build the registry for every configured dependency.

    Args:
        settings: Breaker profiles (defaults to global settings)
        clock: Wall-clock source shared by all breakers

    Returns:
        CircuitBreakerRegistry: kernel, openai, sendgrid and n8n by default
    """
    if settings is None:
        settings = get_settings().circuit

    registry = CircuitBreakerRegistry(clock=clock, listeners=[publish_state_change])
    for name, profile in settings.breakers.items():
        registry.register(name, CircuitBreakerConfig.from_profile(profile))
    return registry


async def with_circuit_breaker(
    breaker: CircuitBreaker,
    fn: Callable[[], Awaitable[T]],
    fallback: Callable[[], Awaitable[T] | T] | None = None,
) -> T:
    """
    Execute a unit of work with circuit breaker protection.

    Args:
        breaker: Breaker guarding the dependency
        fn: Async callable doing the (already retried) work
        fallback: Called instead of raising when the circuit is open

    Returns:
        Result from fn, or from fallback when the circuit is open

    Raises:
        CircuitOpenError: If the circuit is open and no fallback was given
    """
    if not breaker.can_execute():
        logger.warning(
            f"Circuit {breaker.name} is OPEN - rejecting request",
            extra={"breaker_name": breaker.name, "fallback": fallback is not None},
        )
        track_circuit_rejection(breaker.name, used_fallback=fallback is not None)

        if fallback is not None:
            result = fallback()
            if inspect.isawaitable(result):
                result = await result
            return result

        raise CircuitOpenError(breaker.name, retry_after_seconds=breaker.retry_after_seconds())

    try:
        result = await fn()
    except Exception as e:
        breaker.record_failure()
        logger.debug(
            f"Circuit {breaker.name} recorded failure: {e}",
            extra={"breaker_name": breaker.name, "fail_count": breaker.failure_count},
        )
        raise

    breaker.record_success()
    return result
