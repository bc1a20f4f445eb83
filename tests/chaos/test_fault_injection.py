"""
Chaos Testing for the BFF resilience layer

Tests system behavior under fault conditions:
- Rate limit store outage and recovery
- Email provider outage (retries, open circuit, outbox backoff)
- Database lock contention during outbox bookkeeping

Run with: pytest tests/chaos/test_fault_injection.py -v -s
"""

import sqlite3
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.clients.messaging import EmailSender, WebhookTrigger
from src.clients.upstream import UpstreamClient
from src.models.outbox import OutboxStatus
from src.models.rate_limit import RateLimitBackend
from src.outbox.handlers import build_default_handlers
from src.outbox.worker import OutboxWorker
from src.resilience.errors import is_transient_database_error
from src.resilience.retry import RetryPolicy

LOGIN = "auth:login"
NO_WAIT = RetryPolicy(name="sendgrid", max_attempts=2, base_delay_seconds=0.0, jitter=False)


class ProviderStub:
    """Email provider that is down until `healthy` is set."""

    def __init__(self):
        self.healthy = False
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.healthy:
            return httpx.Response(202)
        return httpx.Response(503, json={"errors": [{"message": "Service Unavailable"}]})


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def email_worker(database, circuit_registry, outbox_settings, utc_clock, provider):
    """Outbox worker wired to the real handlers and a stubbed email provider."""
    sendgrid = UpstreamClient(
        "sendgrid",
        "http://sendgrid.test",
        circuit_registry["sendgrid"],
        policy=NO_WAIT,
        transport=httpx.MockTransport(provider),
    )
    n8n = UpstreamClient(
        "n8n",
        "http://n8n.test",
        circuit_registry["n8n"],
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )
    handlers = build_default_handlers(
        EmailSender(sendgrid, "noreply@fund.test"), WebhookTrigger(n8n)
    )
    return OutboxWorker(
        database,
        handlers,
        outbox_settings,
        clock=utc_clock,
        db_policy=RetryPolicy(name="database", max_attempts=1),
    )


def capital_call(n: int) -> dict:
    return {"lp_email": f"lp{n}@example.com", "deal_name": "Fund II", "amount": 250000}


class TestRateLimitStoreFailures:
    """Brute-force protection when Redis goes away."""

    @pytest.mark.asyncio
    async def test_redis_outage_mid_stream(self, rate_limiter, fake_redis, clock):
        """
        Scenario: Redis dies after 3 login attempts, then recovers

        Expected: Protection continues on local counters; once Redis is back
        the shared counter picks up where it left off
        """
        print("\n" + "=" * 80)
        print("CHAOS TEST: Rate Limit Store Outage")
        print("=" * 80)

        for _ in range(3):
            result = await rate_limiter.check_rate_limit("10.0.0.1", LOGIN)
        assert result.backend is RateLimitBackend.REDIS

        fake_redis.failing = True
        during = [await rate_limiter.check_rate_limit("10.0.0.1", LOGIN) for _ in range(6)]

        print(f"  Attempts during outage: {[r.attempts for r in during]}")
        assert all(r.degraded for r in during)
        assert [r.allowed for r in during] == [True] * 5 + [False]
        assert rate_limiter.degraded

        fake_redis.failing = False
        clock.advance(5)
        after = await rate_limiter.check_rate_limit("10.0.0.1", LOGIN)

        print(f"  First attempt after recovery: backend={after.backend.value}")
        assert after.backend is RateLimitBackend.REDIS
        assert after.attempts == 4
        assert not rate_limiter.degraded

    @pytest.mark.asyncio
    async def test_flapping_store_never_raises(self, rate_limiter, fake_redis, clock):
        """Every check returns a decision, whatever the store does."""
        for i in range(20):
            fake_redis.failing = i % 3 == 0
            clock.advance(5)
            result = await rate_limiter.check_rate_limit(f"10.0.0.{i}", LOGIN)
            assert result.allowed


class TestEmailProviderOutage:
    """Outbox delivery while the email provider is down."""

    @pytest.mark.asyncio
    async def test_outage_opens_circuit_and_outbox_retries(
        self, email_worker, database, circuit_registry, provider, clock, utc_clock
    ):
        """
        Scenario: Email provider returns 503 for every request

        Expected:
        - Each delivery is retried inside the call, then counted once by the breaker
        - The circuit opens; later deliveries fail fast without reaching the provider
        - Outbox rows stay PENDING with backoff, none are lost
        - After recovery every capital call notice is delivered
        """
        print("\n" + "=" * 80)
        print("CHAOS TEST: Email Provider Outage")
        print("=" * 80)

        breaker = circuit_registry["sendgrid"]
        events = [
            await email_worker.enqueue("SEND_CAPITAL_CALL_NOTICE", capital_call(n))
            for n in range(3)
        ]

        first = await email_worker.process_outbox()

        print(f"  Batch during outage: retried={first.retried}, provider requests={provider.requests}")
        assert first.retried == 3
        assert provider.requests == 6
        assert breaker.is_open()

        late = await email_worker.enqueue("SEND_CAPITAL_CALL_NOTICE", capital_call(3))
        await email_worker.process_outbox()

        stored = await database.get_event(late.id)
        assert stored.status is OutboxStatus.PENDING
        assert stored.last_error.startswith("CircuitOpenError")
        assert provider.requests == 6

        # Provider recovers; cooldown and outbox backoff elapse
        provider.healthy = True
        clock.advance(10)
        utc_clock.advance(3600)

        recovered = await email_worker.process_outbox()

        print(f"  Batch after recovery: completed={recovered.completed}")
        assert recovered.completed == 4
        assert breaker.is_closed()
        for event in [*events, late]:
            assert (await database.get_event(event.id)).status is OutboxStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_payload_does_not_trip_circuit(
        self, email_worker, database, circuit_registry, provider
    ):
        """A malformed event fails on its own; the provider is never called."""
        event = await email_worker.enqueue(
            "SEND_CAPITAL_CALL_NOTICE", {"deal_name": "Fund II"}, max_attempts=1
        )

        await email_worker.process_outbox()

        stored = await database.get_event(event.id)
        assert stored.status is OutboxStatus.FAILED
        assert stored.last_error.startswith("InvalidPayloadError")
        assert provider.requests == 0
        assert circuit_registry["sendgrid"].failure_count == 0


class TestDatabaseContention:
    """Outbox bookkeeping under SQLite lock contention."""

    @pytest.mark.asyncio
    async def test_locked_database_is_retried(
        self, database, handlers, email_handler, outbox_settings, utc_clock
    ):
        worker = OutboxWorker(
            database,
            handlers,
            outbox_settings,
            clock=utc_clock,
            db_policy=RetryPolicy(
                name="database",
                max_attempts=2,
                base_delay_seconds=0.0,
                jitter=False,
                retry_predicate=is_transient_database_error,
            ),
        )
        event = await worker.enqueue("SEND_EMAIL", {"to": "lp@example.com", "subject": "Hi"})

        real_mark_completed = database.mark_completed
        calls = 0

        async def locked_once(event_id, now):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise sqlite3.OperationalError("database is locked")
            return await real_mark_completed(event_id, now)

        with patch.object(database, "mark_completed", locked_once):
            result = await worker.process_outbox()

        assert result.completed == 1
        assert calls == 2
        email_handler.assert_awaited_once()
        assert (await database.get_event(event.id)).status is OutboxStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_persistent_database_error_leaves_row_for_reaper(
        self, outbox_worker, database, email_handler, utc_clock
    ):
        """
        Scenario: Completion cannot be written (disk error)

        Expected: The tick survives; the row stays PROCESSING until its
        lease expires, then the reaper requeues it
        """
        event = await outbox_worker.enqueue("SEND_EMAIL", {"to": "lp@example.com", "subject": "Hi"})

        with patch.object(
            database,
            "mark_completed",
            AsyncMock(side_effect=sqlite3.OperationalError("disk I/O error")),
        ):
            result = await outbox_worker.process_outbox()

        assert result.completed == 0
        assert (await database.get_event(event.id)).status is OutboxStatus.PROCESSING

        utc_clock.advance(301)
        assert await outbox_worker.requeue_stale_events() == 1
        assert (await outbox_worker.process_outbox()).completed == 1
        # At-least-once: the handler ran twice
        assert email_handler.await_count == 2
