"""
Tests for upstream calls through breaker and retry.

HTTP is served by httpx.MockTransport, so the full client stack runs:
UpstreamClient -> call_external -> with_circuit_breaker -> with_retry.
"""

import asyncio
import json

import httpx
import pytest

from src.clients.messaging import EmailSender, WebhookTrigger
from src.clients.upstream import UpstreamClient, build_upstream_clients
from src.config import CircuitBreakerSettings, UpstreamSettings
from src.resilience.circuit_breakers import (
    CircuitBreaker,
    CircuitBreakerConfig,
    build_circuit_registry,
)
from src.resilience.errors import CircuitOpenError, ErrorKind, ExternalServiceError
from src.resilience.external import call_external
from src.resilience.retry import RetryPolicy

NO_WAIT = RetryPolicy(name="test", max_attempts=3, base_delay_seconds=0.0, jitter=False)


class ScriptedTransport:
    """Serves scripted responses (or raises scripted errors) in order."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        # Fresh copy: the last step may be served more than once
        return httpx.Response(step.status_code, headers=step.headers, content=step.content)


def make_client(
    breaker, *steps, policy=NO_WAIT, name="kernel"
) -> tuple[UpstreamClient, ScriptedTransport]:
    script = ScriptedTransport(*steps)
    client = UpstreamClient(
        name,
        "http://upstream.test",
        breaker,
        policy=policy,
        transport=httpx.MockTransport(script),
    )
    return client, script


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(
        "kernel",
        CircuitBreakerConfig(failure_threshold=2, open_duration_seconds=30.0),
        clock=clock,
    )


class TestUpstreamClient:
    @pytest.mark.asyncio
    async def test_success(self, breaker):
        client, script = make_client(breaker, httpx.Response(200, json={"id": "deal-1"}))

        assert await client.get_json("/deals/deal-1") == {"id": "deal-1"}
        assert len(script.requests) == 1
        assert breaker.is_closed()

    @pytest.mark.asyncio
    async def test_transient_503_is_retried(self, breaker):
        client, script = make_client(
            breaker,
            httpx.Response(503),
            httpx.Response(200, json={"ok": True}),
        )

        assert await client.get_json("/deals") == {"ok": True}
        assert len(script.requests) == 2
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, breaker):
        client, script = make_client(
            breaker, httpx.Response(422, json={"code": "VALIDATION_FAILED"})
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.post_json("/deals", {"name": ""})

        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.status == 422
        assert exc_info.value.code == "VALIDATION_FAILED"
        assert len(script.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error_becomes_network_error(self, breaker):
        client, script = make_client(breaker, httpx.ConnectError("connection refused"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_json("/deals")

        assert exc_info.value.kind is ErrorKind.NETWORK
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert len(script.requests) == 3

    @pytest.mark.asyncio
    async def test_attempt_timeout_becomes_network_error(self, breaker):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200)

        client = UpstreamClient(
            "kernel",
            "http://upstream.test",
            breaker,
            policy=RetryPolicy(
                name="kernel",
                max_attempts=2,
                base_delay_seconds=0.0,
                jitter=False,
                attempt_timeout_seconds=0.01,
            ),
            transport=httpx.MockTransport(slow),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_json("/deals")

        assert exc_info.value.kind is ErrorKind.NETWORK
        assert isinstance(exc_info.value.__cause__, TimeoutError)
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_nested_error_code_is_extracted(self, breaker):
        client, _ = make_client(
            breaker, httpx.Response(500, json={"error": {"code": "KERNEL_UNAVAILABLE"}})
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_json("/deals")

        assert exc_info.value.code == "KERNEL_UNAVAILABLE"
        assert exc_info.value.kind is ErrorKind.SERVER

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_once_towards_breaker(self, breaker):
        client, script = make_client(breaker, httpx.Response(500))

        with pytest.raises(ExternalServiceError):
            await client.get_json("/deals")

        assert len(script.requests) == 3
        assert breaker.failure_count == 1
        assert breaker.is_closed()

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self, breaker):
        client, script = make_client(breaker, httpx.Response(500))

        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await client.get_json("/deals")
        assert breaker.is_open()
        sent = len(script.requests)

        with pytest.raises(CircuitOpenError):
            await client.get_json("/deals")
        assert len(script.requests) == sent

    @pytest.mark.asyncio
    async def test_open_circuit_fallback(self, breaker):
        client, script = make_client(breaker, httpx.Response(200))
        for _ in range(2):
            breaker.record_failure()

        result = await client.request("GET", "/deals", fallback=lambda: "cached")

        assert result == "cached"
        assert script.requests == []


class TestCallExternal:
    @pytest.mark.asyncio
    async def test_without_policy_is_single_attempt(self, breaker):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            raise ExternalServiceError.from_status("kernel", 503)

        with pytest.raises(ExternalServiceError):
            await call_external(breaker, flaky)

        assert calls == 1
        assert breaker.failure_count == 1


class TestMessaging:
    @pytest.mark.asyncio
    async def test_send_email_posts_provider_payload(self, breaker):
        client, script = make_client(breaker, httpx.Response(202), name="sendgrid")
        sender = EmailSender(client, "noreply@fund.test")

        await sender.send_email(
            "lp@example.com",
            "Capital Call Notice: Fund I",
            template="capital-call-notice",
            data={"deal_name": "Fund I"},
        )

        request = script.requests[0]
        body = json.loads(request.content)
        assert request.url.path == "/v3/mail/send"
        assert body["from"] == {"email": "noreply@fund.test"}
        assert body["template_id"] == "capital-call-notice"
        assert body["personalizations"][0]["to"] == [{"email": "lp@example.com"}]
        assert body["personalizations"][0]["dynamic_template_data"] == {"deal_name": "Fund I"}

    @pytest.mark.asyncio
    async def test_send_email_requires_body_or_template(self, breaker):
        client, script = make_client(breaker, httpx.Response(202), name="sendgrid")

        with pytest.raises(ValueError, match="requires a text body"):
            await EmailSender(client, "noreply@fund.test").send_email("lp@example.com", "Hi")

        assert script.requests == []

    @pytest.mark.asyncio
    async def test_webhook_trigger(self, breaker):
        client, script = make_client(breaker, httpx.Response(200), name="n8n")

        await WebhookTrigger(client).trigger(
            "/webhook/deal-closed", data={"deal_id": "d1"}, headers={"X-Signature": "abc"}
        )

        request = script.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/webhook/deal-closed"
        assert request.headers["X-Signature"] == "abc"
        assert json.loads(request.content) == {"deal_id": "d1"}


def test_build_upstream_clients_sets_auth_headers(circuit_registry):
    settings = UpstreamSettings(openai_api_key="sk-test", sendgrid_api_key="")

    clients = build_upstream_clients(circuit_registry, {}, settings)

    assert set(clients) == {"kernel", "openai", "sendgrid", "n8n"}
    assert clients["openai"]._client.headers["Authorization"] == "Bearer sk-test"
    assert "Authorization" not in clients["sendgrid"]._client.headers
    assert clients["kernel"].breaker is circuit_registry["kernel"]


def test_build_upstream_clients_with_partial_breaker_override(monkeypatch):
    monkeypatch.setenv("CIRCUIT_BREAKERS", '{"kernel": {"failure_threshold": 5}}')
    registry = build_circuit_registry(CircuitBreakerSettings())

    clients = build_upstream_clients(registry, {}, UpstreamSettings())

    assert set(clients) == {"kernel", "openai", "sendgrid", "n8n"}
    assert clients["kernel"].breaker.config.failure_threshold == 5
    assert clients["openai"].breaker.config.failure_threshold == 2
