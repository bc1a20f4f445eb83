"""
Tests for brute-force protection on authentication endpoints.

A small app mounts a login route guarded by rate_limited() and renders
RateLimitExceededError the same way the service does.
"""

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from src.auth.dependencies import clear_rate_limit, get_client_ip, rate_limited
from src.main import rate_limit_exceeded_handler
from src.rate_limits import RateLimitExceededError

PASSWORD = "correct-horse"


def build_app(rate_limiter=None) -> FastAPI:
    app = FastAPI()
    app.add_exception_handler(RateLimitExceededError, rate_limit_exceeded_handler)
    if rate_limiter is not None:
        app.state.rate_limiter = rate_limiter

    @app.post(
        "/auth/login",
        dependencies=[Depends(rate_limited("auth:login", subject_header="X-Login-Email"))],
    )
    async def login(request: Request):
        email = request.headers.get("X-Login-Email")
        if request.headers.get("X-Password") != PASSWORD:
            return {"authenticated": False, "attempts": request.state.rate_limit.attempts}
        await clear_rate_limit(request, "auth:login", email)
        return {"authenticated": True}

    @app.get("/whoami")
    async def whoami(request: Request):
        return {"ip": get_client_ip(request)}

    return app


@pytest.fixture
def client(rate_limiter) -> TestClient:
    return TestClient(build_app(rate_limiter))


def attempt(client: TestClient, email: str = "LP@example.com", password: str = "wrong"):
    return client.post(
        "/auth/login", headers={"X-Login-Email": email, "X-Password": password}
    )


def test_attempts_are_counted_per_ip_and_account(client, fake_redis):
    response = attempt(client)

    assert response.json() == {"authenticated": False, "attempts": 1}
    assert fake_redis.values["ratelimit:auth:login:testclient:lp@example.com"] == 1


def test_sixth_attempt_is_rejected_with_retry_after(client):
    for _ in range(5):
        assert attempt(client).status_code == 200

    response = attempt(client)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "900"
    assert response.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert response.json()["retry_after_seconds"] == 900


def test_other_accounts_are_unaffected(client):
    for _ in range(6):
        attempt(client)

    assert attempt(client, email="gp@example.com").status_code == 200


def test_successful_login_clears_counter(client):
    for _ in range(4):
        attempt(client)

    assert attempt(client, password=PASSWORD).json() == {"authenticated": True}
    assert attempt(client).json()["attempts"] == 1


def test_forwarded_for_first_hop_is_the_client(client):
    response = client.get("/whoami", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

    assert response.json() == {"ip": "203.0.113.7"}


def test_missing_limiter_is_unavailable():
    response = attempt(TestClient(build_app()))

    assert response.status_code == 503
