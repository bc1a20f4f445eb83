"""
Outbound clients for external dependencies.
"""

from src.clients.messaging import EmailSender, WebhookTrigger
from src.clients.upstream import UpstreamClient, build_upstream_clients

__all__ = ["EmailSender", "UpstreamClient", "WebhookTrigger", "build_upstream_clients"]
