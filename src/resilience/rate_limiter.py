"""
Brute-force rate limiter for authentication and sensitive endpoints.

Counts attempts per (endpoint, identifier) in fixed windows that start at the
first attempt.

Stores:
- Redis (source of truth, shared by every instance): INCR, then PEXPIRE on
  the first increment; PTTL afterwards
- In-process TLRU cache (degraded mode only): used while Redis is
  unreachable, so an outage weakens protection to per-instance counters
  instead of disabling it
- Neither usable: fail open (allowed=True, error=True) and log loudly

Every check writes a security audit row; audit failures never fail the check.
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis
from cachetools import TLRUCache
from redis.exceptions import RedisError

from src.config import EndpointLimit, RateLimitSettings, get_settings
from src.models.rate_limit import (
    RateLimitBackend,
    RateLimitResult,
    RateLimitStatus,
    SecurityEvent,
    SecurityEventType,
)
from src.observability.metrics import set_rate_limit_degraded, track_rate_limit_check
from src.rate_limits import RateLimitExceededError, get_endpoint_limit
from src.storage.database import ResilienceDatabase

logger = logging.getLogger(__name__)

# Errors that mean "the shared store is unusable right now"
STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass
class LocalCounter:
    """Degraded-mode counter; expiry is fixed at the first attempt."""

    count: int
    expires_at: float


def _counter_expiry(_key: str, counter: LocalCounter, _now: float) -> float:
    return counter.expires_at


def default_ip_address(identifier: str) -> str:
    """Identifiers are "ip" or "ip:subject"; the audit row records the ip part."""
    return identifier.split(":")[0]


class RateLimiter:
    """
    Per-endpoint attempt counter with a shared store and a local fallback.

    One instance per process, built at startup and stored on app.state.
    """

    def __init__(
        self,
        settings: RateLimitSettings | None = None,
        redis_client: Any | None = None,
        database: ResilienceDatabase | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            settings: Rate limit settings (defaults to global settings)
            redis_client: redis.asyncio client (created by connect() if omitted)
            database: Audit sink for security events (None = no audit)
            clock: Wall-clock source in epoch seconds (injectable for tests)
        """
        self.settings = settings or get_settings().rate_limit
        self._redis = redis_client
        self._database = database
        self._clock = clock

        self._fallback: TLRUCache = TLRUCache(
            maxsize=self.settings.fallback_max_entries,
            ttu=_counter_expiry,
            timer=clock,
        )

        self._degraded = False
        self._store_retry_at = 0.0
        self._sweeper_task: asyncio.Task | None = None

    @property
    def degraded(self) -> bool:
        """True while the shared store is unreachable."""
        return self._degraded

    async def connect(self) -> None:
        """Create the Redis client (no network I/O until the first command)."""
        if self._redis is not None or not self.settings.use_redis:
            return

        self._redis = redis.from_url(
            self.settings.redis_url,
            decode_responses=True,
            socket_timeout=self.settings.socket_timeout_seconds,
            socket_connect_timeout=self.settings.socket_timeout_seconds,
        )
        logger.info("Rate limiter connected to shared store")

    async def close(self) -> None:
        """Stop the sweeper and close the Redis connection."""
        await self.stop()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _key(self, endpoint: str, identifier: str) -> str:
        return f"{self.settings.key_prefix}:{endpoint}:{identifier}"

    def get_limit(self, endpoint: str) -> EndpointLimit:
        return get_endpoint_limit(endpoint, self.settings)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_rate_limit(
        self,
        identifier: str,
        endpoint: str,
        ip_address: str | None = None,
    ) -> RateLimitResult:
        """
        Count an attempt and decide whether it is allowed.

        Args:
            identifier: Who is attempting (IP, or "ip:email")
            endpoint: Endpoint key (e.g. auth:login)
            ip_address: Recorded in the audit row (default: identifier prefix)

        Returns:
            RateLimitResult: allowed iff attempts <= max_attempts
        """
        limit = self.get_limit(endpoint)
        key = self._key(endpoint, identifier)
        window_ms = int(limit.window_seconds * 1000)

        counted: tuple[int, int] | None = None
        backend = RateLimitBackend.REDIS

        if self._shared_store_usable():
            try:
                counted = await self._increment_shared(key, window_ms)
                self._mark_store_healthy()
            except STORE_ERRORS as e:
                self._mark_store_degraded(e)

        if counted is None:
            try:
                counted = self._increment_local(key, limit.window_seconds)
                backend = RateLimitBackend.LOCAL
            except Exception as e:
                # Fail open: a broken limiter must not lock users out
                logger.error(
                    f"Rate limit check failed for {endpoint} - allowing request: {e}",
                    exc_info=True,
                    extra={"endpoint": endpoint},
                )
                track_rate_limit_check(endpoint, True, RateLimitBackend.FAIL_OPEN.value)
                return RateLimitResult(
                    allowed=True,
                    attempts=0,
                    max_attempts=limit.max_attempts,
                    error=True,
                    backend=RateLimitBackend.FAIL_OPEN,
                )

        attempts, ttl_ms = counted
        allowed = attempts <= limit.max_attempts
        result = RateLimitResult(
            allowed=allowed,
            attempts=attempts,
            max_attempts=limit.max_attempts,
            retry_after_seconds=0 if allowed else max(1, math.ceil(ttl_ms / 1000)),
            retry_after_ms=0 if allowed else ttl_ms,
            degraded=backend is RateLimitBackend.LOCAL and self._degraded,
            backend=backend,
        )

        track_rate_limit_check(endpoint, allowed, backend.value)

        if not allowed:
            logger.warning(
                f"Rate limit exceeded on {endpoint}",
                extra={
                    "endpoint": endpoint,
                    "attempts": attempts,
                    "max_attempts": limit.max_attempts,
                    "retry_after_seconds": result.retry_after_seconds,
                    "degraded": result.degraded,
                },
            )

        await self._audit(
            SecurityEvent(
                event_type=(
                    SecurityEventType.RATE_LIMIT_CHECK
                    if allowed
                    else SecurityEventType.RATE_LIMIT_EXCEEDED
                ),
                identifier=identifier,
                endpoint=endpoint,
                attempts=attempts,
                allowed=allowed,
                ip_address=ip_address or default_ip_address(identifier),
                metadata={"backend": backend.value} if backend is not RateLimitBackend.REDIS else {},
            )
        )

        return result

    async def enforce(
        self,
        identifier: str,
        endpoint: str,
        ip_address: str | None = None,
    ) -> RateLimitResult:
        """
        check_rate_limit() that raises when the attempt is denied.

        Raises:
            RateLimitExceededError: attempts > max_attempts
        """
        result = await self.check_rate_limit(identifier, endpoint, ip_address=ip_address)
        if not result.allowed:
            raise RateLimitExceededError(
                endpoint=endpoint,
                identifier=identifier,
                max_attempts=result.max_attempts,
                retry_after_seconds=result.retry_after_seconds,
            )
        return result

    async def _increment_shared(self, key: str, window_ms: int) -> tuple[int, int]:
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.pexpire(key, window_ms)
            return count, window_ms

        ttl_ms = await self._redis.pttl(key)
        if ttl_ms < 0:
            # Key lost its expiry (crash between INCR and PEXPIRE)
            await self._redis.pexpire(key, window_ms)
            ttl_ms = window_ms
        return count, ttl_ms

    def _increment_local(self, key: str, window_seconds: float) -> tuple[int, int]:
        now = self._clock()
        counter = self._fallback.get(key)
        if counter is None:
            counter = LocalCounter(count=1, expires_at=now + window_seconds)
            self._fallback[key] = counter
        else:
            counter.count += 1

        ttl_ms = max(0, int((counter.expires_at - now) * 1000))
        return counter.count, ttl_ms

    # ------------------------------------------------------------------
    # Shared store health
    # ------------------------------------------------------------------

    def _shared_store_usable(self) -> bool:
        if self._redis is None:
            return False
        return not self._degraded or self._clock() >= self._store_retry_at

    def _mark_store_degraded(self, error: BaseException) -> None:
        self._store_retry_at = self._clock() + self.settings.store_retry_interval_seconds
        if self._degraded:
            return

        self._degraded = True
        set_rate_limit_degraded(True)
        logger.warning(
            f"Rate limit store unreachable - using per-instance counters: {error}",
            extra={
                "error_type": type(error).__name__,
                "retry_in_seconds": self.settings.store_retry_interval_seconds,
            },
        )

    def _mark_store_healthy(self) -> None:
        if not self._degraded:
            return

        self._degraded = False
        set_rate_limit_degraded(False)
        logger.info("Rate limit store reachable again - shared counters restored")

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def reset_rate_limit(
        self, identifier: str, endpoint: str, actor: str | None = None
    ) -> None:
        """
        Clear the counter for an identifier (e.g. after successful login).

        Args:
            identifier: Identifier whose counter is cleared
            endpoint: Endpoint key
            actor: Who requested the reset (recorded in the audit row)
        """
        key = self._key(endpoint, identifier)
        self._fallback.pop(key, None)

        if self._shared_store_usable():
            try:
                await self._redis.delete(key)
                self._mark_store_healthy()
            except STORE_ERRORS as e:
                self._mark_store_degraded(e)

        logger.info(f"Rate limit reset for {endpoint}", extra={"endpoint": endpoint})

        await self._audit(
            SecurityEvent(
                event_type=SecurityEventType.RATE_LIMIT_RESET,
                identifier=identifier,
                endpoint=endpoint,
                ip_address=default_ip_address(identifier),
                metadata={"actor": actor} if actor else {},
            )
        )

    async def get_rate_limit_status(self, identifier: str, endpoint: str) -> RateLimitStatus:
        """
        Read a counter without counting an attempt.

        Returns:
            RateLimitStatus: attempts, remaining and seconds until reset
        """
        limit = self.get_limit(endpoint)
        key = self._key(endpoint, identifier)

        attempts = 0
        ttl_ms = 0
        read = False

        if self._shared_store_usable():
            try:
                value = await self._redis.get(key)
                if value is not None:
                    attempts = int(value)
                    ttl_ms = max(0, await self._redis.pttl(key))
                read = True
                self._mark_store_healthy()
            except STORE_ERRORS as e:
                self._mark_store_degraded(e)

        if not read:
            counter = self._fallback.get(key)
            if counter is not None:
                attempts = counter.count
                ttl_ms = max(0, int((counter.expires_at - self._clock()) * 1000))

        return RateLimitStatus(
            endpoint=endpoint,
            identifier=identifier,
            attempts=attempts,
            max_attempts=limit.max_attempts,
            remaining=max(0, limit.max_attempts - attempts),
            resets_in_seconds=math.ceil(ttl_ms / 1000),
            degraded=not read and self._degraded,
        )

    async def log_security_event(
        self,
        event_type: SecurityEventType,
        identifier: str | None = None,
        endpoint: str | None = None,
        ip_address: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write a free-form security audit row."""
        await self._audit(
            SecurityEvent(
                event_type=event_type,
                identifier=identifier,
                endpoint=endpoint,
                ip_address=ip_address,
                metadata=metadata or {},
            )
        )

    async def _audit(self, event: SecurityEvent) -> None:
        if self._database is None:
            return
        try:
            await self._database.log_security_event(event)
        except Exception as e:
            logger.warning(
                f"Failed to log security event: {e}",
                extra={"event_type": event.event_type.value},
            )

    # ------------------------------------------------------------------
    # Degraded-mode housekeeping
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """
        Drop expired local counters.

        Returns:
            int: Number of counters removed
        """
        removed = len(self._fallback.expire())
        if removed:
            logger.debug(f"Swept {removed} expired local rate limit counters")
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            self.sweep_expired()

    def start(self) -> None:
        """Start the periodic sweeper task."""
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the sweeper task."""
        task, self._sweeper_task = self._sweeper_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
