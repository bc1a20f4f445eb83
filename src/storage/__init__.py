"""
Storage layer for the transactional outbox and the security audit log.

Uses SQLite (embedded, WAL mode).
"""

from src.storage.database import ResilienceDatabase, add_to_outbox

__all__ = ["ResilienceDatabase", "add_to_outbox"]
