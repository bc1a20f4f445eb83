"""
structlog setup for the resilience layer.

Every log line carries the service identity and, inside an HTTP request, the
request ID, trace ID and client IP. Credentials never reach the output, and
rate limit identifiers ("ip:email") are cut back to the IP part because they
name the account being attacked.

JSON lines in production, human-readable console output in development.
"""

import logging
import sys
import uuid
from contextvars import ContextVar, Token

import structlog
from structlog.types import EventDict, Processor

from src.config import get_settings

# Request-scoped values, copied into each asyncio task
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[str | None] = ContextVar("client_ip", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

SENSITIVE_FIELDS = {
    "admin_key",
    "api_key",
    "authorization",
    "password",
    "secret",
    "token",
}

REDACTED = "***REDACTED***"


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Copy request_id, client_ip and trace_id from the current context, when set."""
    for field, var in (
        ("request_id", request_id_var),
        ("client_ip", client_ip_var),
        ("trace_id", trace_id_var),
    ):
        value = var.get()
        if value:
            event_dict[field] = value
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp service, version and environment (LOGGING_* settings)."""
    config = get_settings().logging
    event_dict["service"] = config.service_name
    event_dict["version"] = config.service_version
    event_dict["environment"] = config.environment
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Mask credentials and personal data.

    - Credential fields (see SENSITIVE_FIELDS) are replaced entirely
    - email keeps its domain: lp@fund.com -> ***@fund.com
    - identifier keeps its IP: 10.0.0.1:lp@fund.com -> 10.0.0.1:***
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue

        name = key.lower()
        if name in SENSITIVE_FIELDS:
            event_dict[key] = REDACTED
        elif name == "email" and "@" in value:
            event_dict[key] = "***@" + value.rsplit("@", 1)[1]
        elif name == "identifier" and ":" in value:
            event_dict[key] = value.split(":", 1)[0] + ":***"

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Install the processor chain and route stdlib logging to stdout.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: One JSON object per line (production)
        colorized: ANSI colours for the console renderer

    A circuit transition in JSON mode:
        {"event": "Circuit breaker opened", "dependency": "sendgrid",
         "service": "bff-resilience", "environment": "production",
         "request_id": "req_9f2c...", "level": "warning",
         "timestamp": "2025-01-15T10:30:45.123456Z"}
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    processors.append(
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=colorized)
    )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Structured logger; fields are keyword arguments.

        logger.warning("Rate limit store degraded", backend="local")
    """
    return structlog.get_logger(name)


class RequestContext:
    """
    Binds request_id, client_ip and trace_id for the duration of a block.

    Missing IDs are generated (req_<hex>, trace_<hex>). Values are restored on
    exit, so contexts nest.

        with RequestContext(client_ip=get_client_ip(request)):
            ...
    """

    def __init__(
        self,
        client_ip: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"
        self.client_ip = client_ip
        self._tokens: list[tuple[ContextVar, Token]] = []

    def __enter__(self) -> "RequestContext":
        for var, value in (
            (request_id_var, self.request_id),
            (client_ip_var, self.client_ip),
            (trace_id_var, self.trace_id),
        ):
            self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def get_request_id() -> str | None:
    return request_id_var.get()
