"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Controllable clocks (epoch seconds and UTC datetimes)
- In-memory Redis stand-in with fault injection
- Temporary SQLite database
- Circuit breaker registry, rate limiter and outbox worker
- Operator API test client
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.config import OutboxSettings, RateLimitSettings, get_settings
from src.outbox.handlers import OutboxHandlerRegistry
from src.outbox.worker import OutboxWorker
from src.rate_limits import operator_limiter
from src.resilience.circuit_breakers import CircuitBreakerConfig, CircuitBreakerRegistry
from src.resilience.rate_limiter import RateLimiter
from src.resilience.retry import RetryPolicy
from src.routers import admin_router
from src.storage.database import ResilienceDatabase

ADMIN_KEY = "test-admin-key-0123456789abcdef0123456789"


class FakeClock:
    """Epoch-seconds clock advanced by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUTCClock:
    """UTC datetime clock advanced by hand."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 15, 10, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRedis:
    """
    Minimal redis.asyncio stand-in: INCR, PEXPIRE, PTTL, GET, DELETE.

    Expiry follows the injected clock. Set `failing = True` to make every
    command raise a connection error.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.values: dict[str, int] = {}
        self.expiry: dict[str, float] = {}
        self.failing = False
        self.closed = False

    def _check(self) -> None:
        if self.failing:
            raise RedisConnectionError("Connection refused")

    def _evict(self, key: str) -> None:
        expires_at = self.expiry.get(key)
        if expires_at is not None and self.clock() >= expires_at:
            self.values.pop(key, None)
            self.expiry.pop(key, None)

    async def incr(self, key: str) -> int:
        self._check()
        self._evict(key)
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def pexpire(self, key: str, ms: int) -> bool:
        self._check()
        if key not in self.values:
            return False
        self.expiry[key] = self.clock() + ms / 1000
        return True

    async def pttl(self, key: str) -> int:
        self._check()
        self._evict(key)
        if key not in self.values:
            return -2
        if key not in self.expiry:
            return -1
        return int((self.expiry[key] - self.clock()) * 1000)

    async def get(self, key: str) -> str | None:
        self._check()
        self._evict(key)
        value = self.values.get(key)
        return None if value is None else str(value)

    async def delete(self, key: str) -> int:
        self._check()
        existed = key in self.values
        self.values.pop(key, None)
        self.expiry.pop(key, None)
        return int(existed)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUTCClock:
    return FakeUTCClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def database(tmp_path):
    """Initialized SQLite database in a temporary directory."""
    db = ResilienceDatabase(str(tmp_path / "resilience.db"))
    asyncio.run(db.initialize())
    yield db
    db.close()


@pytest.fixture
def circuit_registry(clock: FakeClock) -> CircuitBreakerRegistry:
    """Registry with a fast-tripping breaker per dependency."""
    registry = CircuitBreakerRegistry(clock=clock)
    config = CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        open_duration_seconds=10.0,
        reset_window_seconds=60.0,
    )
    for name in ("kernel", "openai", "sendgrid", "n8n"):
        registry.register(name, config)
    return registry


@pytest.fixture
def rate_limit_settings() -> RateLimitSettings:
    return RateLimitSettings(
        window_seconds=900.0,
        max_attempts=5,
        store_retry_interval_seconds=5.0,
    )


@pytest.fixture
def rate_limiter(rate_limit_settings, fake_redis, database, clock) -> RateLimiter:
    return RateLimiter(
        rate_limit_settings,
        redis_client=fake_redis,
        database=database,
        clock=clock,
    )


@pytest.fixture
def outbox_settings() -> OutboxSettings:
    return OutboxSettings(
        batch_size=10,
        max_concurrency=4,
        default_max_attempts=3,
        backoff_base_seconds=60.0,
        backoff_factor=2.0,
        backoff_max_seconds=3600.0,
        backoff_jitter=False,
        lease_seconds=300.0,
    )


@pytest.fixture
def email_handler() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def handlers(email_handler: AsyncMock) -> OutboxHandlerRegistry:
    registry = OutboxHandlerRegistry()
    registry.register("SEND_EMAIL", email_handler)
    return registry


@pytest.fixture
def outbox_worker(database, handlers, outbox_settings, utc_clock) -> OutboxWorker:
    return OutboxWorker(
        database,
        handlers,
        outbox_settings,
        clock=utc_clock,
        db_policy=RetryPolicy(name="database", max_attempts=1),
    )


@pytest.fixture
def admin_key(monkeypatch) -> str:
    """Configure the operator key on the global settings."""
    monkeypatch.setattr(get_settings(), "admin_api_key", ADMIN_KEY)
    return ADMIN_KEY


@pytest.fixture
def admin_app(circuit_registry, rate_limiter, outbox_worker, database) -> FastAPI:
    """Operator router mounted on a bare app with test components on app.state."""
    operator_limiter.reset()

    app = FastAPI()
    app.state.limiter = operator_limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.include_router(admin_router)

    app.state.database = database
    app.state.circuit_registry = circuit_registry
    app.state.rate_limiter = rate_limiter
    app.state.outbox_worker = outbox_worker
    return app


@pytest.fixture
def admin_client(admin_app: FastAPI, admin_key: str) -> TestClient:
    return TestClient(admin_app, headers={"X-Admin-Key": admin_key})
