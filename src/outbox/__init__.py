"""
Transactional outbox: durable, at-least-once delivery of side effects.
"""

from src.outbox.handlers import OutboxHandlerRegistry, build_default_handlers
from src.outbox.worker import OutboxWorker

__all__ = ["OutboxHandlerRegistry", "OutboxWorker", "build_default_handlers"]
