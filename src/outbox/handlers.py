"""
Outbox handler registry.

Handlers receive the decoded JSON payload and either return (success) or
raise (failure, retried with backoff). Delivery is at-least-once, so every
handler must be safe to run twice for the same payload; payloads may carry a
dedup key for downstream idempotency.

Default event types:
    SEND_EMAIL                 {to, subject, text?, html?, template?, data?}
    SEND_NOTIFICATION          {to, title, message}
    SEND_LP_INVITATION         {lp_email, deal_name, ...}
    SEND_CAPITAL_CALL_NOTICE   {lp_email, deal_name, ...}
    SEND_DISTRIBUTION_NOTICE   {lp_email, deal_name, ...}
    TRIGGER_WEBHOOK            {webhook_url, data?, headers?}
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from src.clients.messaging import EmailSender, WebhookTrigger

logger = logging.getLogger(__name__)

OutboxHandler = Callable[[dict[str, Any]], Awaitable[None]]


class UnknownEventTypeError(LookupError):
    """No handler is registered for an event type."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type}")


class InvalidPayloadError(ValueError):
    """Payload is missing a field the handler needs."""


def _require(payload: dict[str, Any], *fields: str) -> None:
    missing = [field for field in fields if not payload.get(field)]
    if missing:
        raise InvalidPayloadError(f"Payload missing required fields: {', '.join(missing)}")


class OutboxHandlerRegistry:
    """Handlers keyed by event type."""

    def __init__(self) -> None:
        self._handlers: dict[str, OutboxHandler] = {}

    def register(self, event_type: str, handler: OutboxHandler) -> None:
        if event_type in self._handlers:
            logger.warning(f"Replacing outbox handler for {event_type}")
        self._handlers[event_type] = handler

    def handler(self, event_type: str) -> Callable[[OutboxHandler], OutboxHandler]:
        """
        Decorator form of register().

        Example:
            @handlers.handler("SEND_SMS")
            async def send_sms(payload): ...
        """

        def decorator(fn: OutboxHandler) -> OutboxHandler:
            self.register(event_type, fn)
            return fn

        return decorator

    def get(self, event_type: str) -> OutboxHandler:
        """
        Raises:
            UnknownEventTypeError: If nothing is registered for event_type
        """
        try:
            return self._handlers[event_type]
        except KeyError:
            raise UnknownEventTypeError(event_type) from None

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._handlers

    def event_types(self) -> list[str]:
        return sorted(self._handlers)


def _lp_notice(
    email: EmailSender, subject_prefix: str, template: str
) -> OutboxHandler:
    async def handle(payload: dict[str, Any]) -> None:
        _require(payload, "lp_email", "deal_name")
        await email.send_email(
            to=payload["lp_email"],
            subject=f"{subject_prefix}: {payload['deal_name']}",
            template=template,
            data=payload,
        )

    return handle


def build_default_handlers(email: EmailSender, webhooks: WebhookTrigger) -> OutboxHandlerRegistry:
    """
    Registry with the standard messaging handlers.

    Args:
        email: Email provider collaborator
        webhooks: Workflow engine collaborator

    Returns:
        OutboxHandlerRegistry: Ready for OutboxWorker
    """
    registry = OutboxHandlerRegistry()

    @registry.handler("SEND_EMAIL")
    async def send_email(payload: dict[str, Any]) -> None:
        _require(payload, "to", "subject")
        await email.send_email(
            to=payload["to"],
            subject=payload["subject"],
            text=payload.get("text"),
            html=payload.get("html"),
            template=payload.get("template"),
            data=payload.get("data"),
        )

    @registry.handler("SEND_NOTIFICATION")
    async def send_notification(payload: dict[str, Any]) -> None:
        _require(payload, "to", "title", "message")
        await email.send_email(
            to=payload["to"],
            subject=payload["title"],
            text=payload["message"],
        )

    registry.register(
        "SEND_LP_INVITATION",
        _lp_notice(email, "Investment Opportunity", "lp-invitation"),
    )
    registry.register(
        "SEND_CAPITAL_CALL_NOTICE",
        _lp_notice(email, "Capital Call Notice", "capital-call-notice"),
    )
    registry.register(
        "SEND_DISTRIBUTION_NOTICE",
        _lp_notice(email, "Distribution Notice", "distribution-notice"),
    )

    @registry.handler("TRIGGER_WEBHOOK")
    async def trigger_webhook(payload: dict[str, Any]) -> None:
        _require(payload, "webhook_url")
        await webhooks.trigger(
            payload["webhook_url"],
            data=payload.get("data"),
            headers=payload.get("headers"),
        )

    return registry
