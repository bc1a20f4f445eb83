"""
HTTP client for external dependencies.

Every request goes through call_external (breaker wrapping retry), and every
failure leaves this module as an ExternalServiceError carrying an ErrorKind,
so callers never see raw transport errors.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from src.config import UpstreamSettings, get_settings
from src.resilience.circuit_breakers import CircuitBreaker, CircuitBreakerRegistry
from src.resilience.errors import ErrorKind, ExternalServiceError
from src.resilience.external import call_external
from src.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _error_code(response: httpx.Response) -> str | None:
    """Extract a {"code": ...} field from an error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    code = body.get("code")
    if code is None and isinstance(body.get("error"), dict):
        code = body["error"].get("code")
    return str(code) if code else None


class UpstreamClient:
    """
    Resilient HTTP client for one dependency.

    The breaker is shared with every other caller of the same dependency
    (it comes from the registry); the httpx client is owned by this instance.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        breaker: CircuitBreaker,
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize upstream client.

        Args:
            name: Dependency name (kernel, openai, sendgrid, n8n)
            base_url: Base URL for relative paths
            breaker: Circuit breaker for this dependency
            policy: Retry policy (None = single attempt)
            timeout_seconds: httpx timeout per attempt
            headers: Default headers (auth, content type)
            transport: httpx transport override (tests)
        """
        self.name = name
        self.breaker = breaker
        self.policy = policy
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        url: str,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        fallback: Callable[[], Awaitable[Any] | Any] | None = None,
    ) -> httpx.Response:
        """
        Issue a request with breaker and retry protection.

        Args:
            method: HTTP method
            url: Path relative to base_url, or an absolute URL
            json: JSON body
            params: Query parameters
            headers: Extra headers for this request
            fallback: Returned instead of raising when the circuit is open

        Raises:
            ExternalServiceError: Non-2xx response or transport failure
            CircuitOpenError: Circuit open and no fallback
        """

        async def attempt() -> httpx.Response:
            try:
                response = await self._client.request(
                    method, url, json=json, params=params, headers=headers
                )
            except httpx.TransportError as e:
                raise ExternalServiceError(
                    self.name,
                    ErrorKind.NETWORK,
                    message=f"{self.name} request failed: {type(e).__name__}",
                ) from e

            if response.is_error:
                raise ExternalServiceError.from_status(
                    self.name, response.status_code, code=_error_code(response)
                )
            return response

        try:
            return await call_external(
                self.breaker, attempt, policy=self.policy, fallback=fallback
            )
        except TimeoutError as e:
            # Per-attempt deadline from the retry policy
            raise ExternalServiceError(
                self.name,
                ErrorKind.NETWORK,
                message=f"{self.name} request timed out",
            ) from e

    async def get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        response = await self.request("GET", url, params=params)
        return response.json()

    async def post_json(self, url: str, payload: Any) -> Any:
        response = await self.request("POST", url, json=payload)
        if not response.content:
            return None
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()


def build_upstream_clients(
    registry: CircuitBreakerRegistry,
    profiles: dict[str, RetryPolicy],
    settings: UpstreamSettings | None = None,
) -> dict[str, UpstreamClient]:
    """
    Build one client per configured dependency.

    Args:
        registry: Breakers (must contain kernel, openai, sendgrid, n8n)
        profiles: Retry policies keyed by dependency name
        settings: Base URLs and credentials (defaults to global settings)

    Returns:
        dict: Dependency name -> UpstreamClient
    """
    if settings is None:
        settings = get_settings().upstream

    endpoints: dict[str, tuple[str, dict[str, str]]] = {
        "kernel": (settings.kernel_url, {}),
        "openai": (
            settings.openai_url,
            {"Authorization": f"Bearer {settings.openai_api_key}"} if settings.openai_api_key else {},
        ),
        "sendgrid": (
            settings.sendgrid_url,
            {"Authorization": f"Bearer {settings.sendgrid_api_key}"}
            if settings.sendgrid_api_key
            else {},
        ),
        "n8n": (settings.n8n_url, {}),
    }

    clients = {}
    for name, (base_url, headers) in endpoints.items():
        clients[name] = UpstreamClient(
            name,
            base_url,
            registry.get(name),
            policy=profiles.get(name),
            timeout_seconds=settings.timeout_seconds,
            headers=headers,
        )
        logger.debug(f"Upstream client ready: {name}", extra={"dependency": name})
    return clients
