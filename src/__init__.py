"""
BFF Resilience - fault tolerance for a backend-for-frontend.

Keeps the BFF serving when its dependencies misbehave.

Calls to the kernel, OpenAI, SendGrid and n8n go through per-dependency
circuit breakers and retry profiles. Authentication endpoints are protected
by a shared-store rate limiter that degrades to local counters, and side
effects such as emails and webhooks are delivered from a transactional outbox.

Key Features:
    - Circuit breakers with half-open probing
    - Classified retries with exponential backoff
    - Brute-force protection backed by Redis
    - Transactional outbox with at-least-once delivery
    - Operator endpoints for inspection and recovery

Example:
    >>> from src import get_settings
    >>> settings = get_settings()
    >>> print(settings.rate_limit.redis_url)
"""

from src.config import get_settings

__all__ = ["get_settings"]
