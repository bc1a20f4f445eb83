"""
Messaging collaborators used by outbox handlers.

- EmailSender: transactional email through the email provider (SendGrid v3)
- WebhookTrigger: workflow engine webhooks (n8n)

Both go through UpstreamClient, so they inherit the dependency's circuit
breaker and retry profile. A call rejected by an open circuit raises
CircuitOpenError, which the outbox records as a failed attempt and retries
later with backoff.
"""

import logging
from typing import Any

from src.clients.upstream import UpstreamClient

logger = logging.getLogger(__name__)


def _mask_email(address: str) -> str:
    """j***@example.com (logs never carry full addresses)."""
    local, _, domain = address.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


class EmailSender:
    """Sends email through the email provider."""

    def __init__(self, client: UpstreamClient, from_address: str):
        self.client = client
        self.from_address = from_address

    async def send_email(
        self,
        to: str,
        subject: str,
        text: str | None = None,
        html: str | None = None,
        template: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        """
        Send one email.

        Args:
            to: Recipient address
            subject: Subject line
            text: Plain-text body
            html: HTML body
            template: Provider template id (rendered with data)
            data: Template variables

        Raises:
            ValueError: No body and no template
            ExternalServiceError: Provider rejected the request
            CircuitOpenError: Provider circuit open
        """
        if not (text or html or template):
            raise ValueError("Email requires a text body, an html body or a template")

        personalization: dict[str, Any] = {"to": [{"email": to}]}
        if data:
            personalization["dynamic_template_data"] = data

        message: dict[str, Any] = {
            "personalizations": [personalization],
            "from": {"email": self.from_address},
            "subject": subject,
        }
        if template:
            message["template_id"] = template
        else:
            content = []
            if text:
                content.append({"type": "text/plain", "value": text})
            if html:
                content.append({"type": "text/html", "value": html})
            message["content"] = content

        await self.client.post_json("/v3/mail/send", message)
        logger.info(
            f"Email sent to {_mask_email(to)}",
            extra={"template": template, "provider": self.client.name},
        )


class WebhookTrigger:
    """Triggers workflow-engine webhooks."""

    def __init__(self, client: UpstreamClient):
        self.client = client

    async def trigger(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """
        POST data to a webhook.

        Args:
            url: Webhook path on the workflow engine, or an absolute URL
            data: JSON body
            headers: Extra request headers

        Raises:
            ExternalServiceError: Non-2xx response or transport failure
        """
        response = await self.client.request("POST", url, json=data or {}, headers=headers)
        logger.info(
            "Webhook triggered",
            extra={"status_code": response.status_code, "provider": self.client.name},
        )
