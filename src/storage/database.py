"""
Outbox and security audit storage using SQLite.

Tables:
- outbox_events: durable side-effect requests (transactional outbox)
- security_events: audit rows for rate limit checks and operator actions

Concurrency features:
- WAL mode so the worker's polling does not block request-path writers
- Compare-and-swap claim (UPDATE ... WHERE status = 'PENDING') so two
  workers never process the same row
- Lease column (locked_until) so rows of a crashed worker are reclaimed

Timestamps are stored as fixed-width ISO-8601 UTC strings, so lexicographic
comparison in SQL matches chronological order.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src.models.outbox import OutboxEvent, OutboxStatus
from src.models.rate_limit import SecurityEvent, SecurityEventType

logger = logging.getLogger(__name__)


def to_db_time(value: datetime) -> str:
    """Format a datetime for storage (UTC, microsecond precision)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _row_to_event(row: sqlite3.Row) -> OutboxEvent:
    return OutboxEvent(
        id=row["id"],
        event_type=row["event_type"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
        status=OutboxStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        last_error=row["last_error"],
        scheduled_for=from_db_time(row["scheduled_for"]),
        locked_until=from_db_time(row["locked_until"]),
        processed_at=from_db_time(row["processed_at"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def add_to_outbox(
    tx: sqlite3.Connection,
    event_type: str,
    payload: dict[str, Any],
    max_attempts: int = 3,
    scheduled_for: datetime | None = None,
    now: datetime | None = None,
) -> OutboxEvent:
    """
    Enqueue a side effect on the caller's open transaction.

    The row becomes visible to the worker if and only if the surrounding
    business transaction commits.

    Args:
        tx: Connection from ResilienceDatabase.transaction()
        event_type: Handler key (e.g. SEND_EMAIL)
        payload: JSON-serializable handler input
        max_attempts: Failed runs before the event is parked as FAILED
        scheduled_for: Earliest delivery time (default: now)
        now: Creation time (default: current UTC time)

    Returns:
        OutboxEvent: The PENDING event as written
    """
    now = now or datetime.now(UTC)
    event = OutboxEvent(
        id=str(uuid.uuid4()),
        event_type=event_type,
        payload=payload,
        status=OutboxStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
        scheduled_for=scheduled_for or now,
        created_at=now,
        updated_at=now,
    )

    tx.execute(
        """
        INSERT INTO outbox_events (
            id, event_type, payload, status, attempts, max_attempts,
            scheduled_for, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.id,
            event.event_type,
            json.dumps(event.payload),
            event.status.value,
            event.attempts,
            event.max_attempts,
            to_db_time(event.scheduled_for),
            to_db_time(now),
            to_db_time(now),
        ),
    )

    logger.debug(
        f"Outbox event queued: {event.event_type}",
        extra={"event_id": event.id, "event_type": event.event_type},
    )
    return event


class ResilienceDatabase:
    """
    Durable state for the resilience layer.

    Methods are async for call-site symmetry with the rest of the service;
    the underlying sqlite3 calls are short and synchronous.
    """

    def __init__(self, db_path: str = "./data/resilience.db"):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing resilience database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))

        try:
            # Enable WAL mode for better concurrency (performance)
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS outbox_events (
                    id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    last_error TEXT,
                    scheduled_for TEXT NOT NULL,
                    locked_until TEXT,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')),
                    CHECK (attempts >= 0),
                    CHECK (max_attempts >= 1),
                    CHECK (attempts <= max_attempts)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS security_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    identifier TEXT,
                    endpoint TEXT,
                    attempts INTEGER,
                    allowed INTEGER,
                    ip_address TEXT,
                    timestamp TEXT NOT NULL,
                    metadata TEXT
                )
            """
            )

            # Polling query: status + scheduled_for
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outbox_status_scheduled "
                "ON outbox_events(status, scheduled_for)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outbox_status_locked "
                "ON outbox_events(status, locked_until)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_security_identifier "
                "ON security_events(identifier)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_security_timestamp ON security_events(timestamp)"
            )

            conn.commit()
            logger.info("Resilience database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Business transaction scope.

        Commits on normal exit, rolls back on exception. Outbox rows added
        with add_to_outbox(tx, ...) share the fate of the business writes.
        Do not await inside the block: the connection is shared.
        """
        conn = self._get_connection()
        with conn:
            yield conn

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    async def get_event(self, event_id: str) -> OutboxEvent | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM outbox_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row) if row else None

    async def fetch_due_events(self, now: datetime, limit: int) -> list[OutboxEvent]:
        """
        Select PENDING events that are due and still have attempts left.

        Args:
            now: Current time; rows scheduled later are never selected
            limit: Batch size

        Returns:
            list[OutboxEvent]: Oldest schedule first
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM outbox_events
            WHERE status = 'PENDING'
              AND scheduled_for <= ?
              AND attempts < max_attempts
            ORDER BY scheduled_for ASC
            LIMIT ?
            """,
            (to_db_time(now), limit),
        ).fetchall()
        return [_row_to_event(row) for row in rows]

    async def claim_event(self, event_id: str, now: datetime, lease_until: datetime) -> bool:
        """
        Move one PENDING row to PROCESSING.

        Returns:
            bool: False if another worker claimed the row first
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE outbox_events
            SET status = 'PROCESSING', locked_until = ?, updated_at = ?
            WHERE id = ? AND status = 'PENDING'
            """,
            (to_db_time(lease_until), to_db_time(now), event_id),
        )
        conn.commit()
        return cursor.rowcount == 1

    async def mark_completed(self, event_id: str, now: datetime) -> bool:
        conn = self._get_connection()
        timestamp = to_db_time(now)
        cursor = conn.execute(
            """
            UPDATE outbox_events
            SET status = 'COMPLETED', processed_at = ?, locked_until = NULL,
                last_error = NULL, updated_at = ?
            WHERE id = ? AND status = 'PROCESSING'
            """,
            (timestamp, timestamp, event_id),
        )
        conn.commit()
        return cursor.rowcount == 1

    async def record_event_failure(
        self,
        event_id: str,
        attempts: int,
        last_error: str,
        now: datetime,
        retry_at: datetime | None,
    ) -> bool:
        """
        Store a failed handler run.

        Args:
            event_id: Event identifier
            attempts: Attempt count including this failure
            last_error: Error message (truncated by caller)
            now: Current time
            retry_at: Next schedule, or None to park the event as FAILED

        Returns:
            bool: False if the row was no longer PROCESSING (lease reclaimed)
        """
        conn = self._get_connection()
        status = OutboxStatus.PENDING if retry_at is not None else OutboxStatus.FAILED
        timestamp = to_db_time(now)
        cursor = conn.execute(
            """
            UPDATE outbox_events
            SET status = ?, attempts = ?, last_error = ?, locked_until = NULL,
                scheduled_for = COALESCE(?, scheduled_for), updated_at = ?
            WHERE id = ? AND status = 'PROCESSING'
            """,
            (
                status.value,
                attempts,
                last_error,
                to_db_time(retry_at) if retry_at is not None else None,
                timestamp,
                event_id,
            ),
        )
        conn.commit()
        return cursor.rowcount == 1

    async def requeue_stale_events(self, now: datetime, reason: str) -> tuple[int, int]:
        """
        Reclaim PROCESSING rows whose lease expired.

        Each reclaim consumes one attempt; rows that run out are parked as
        FAILED instead of requeued.

        Returns:
            tuple: (requeued, failed)
        """
        conn = self._get_connection()
        timestamp = to_db_time(now)

        with conn:
            failed = conn.execute(
                """
                UPDATE outbox_events
                SET status = 'FAILED', attempts = attempts + 1, last_error = ?,
                    locked_until = NULL, updated_at = ?
                WHERE status = 'PROCESSING'
                  AND locked_until < ?
                  AND attempts + 1 >= max_attempts
                """,
                (reason, timestamp, timestamp),
            ).rowcount
            requeued = conn.execute(
                """
                UPDATE outbox_events
                SET status = 'PENDING', attempts = attempts + 1, last_error = ?,
                    locked_until = NULL, scheduled_for = ?, updated_at = ?
                WHERE status = 'PROCESSING'
                  AND locked_until < ?
                """,
                (reason, timestamp, timestamp, timestamp),
            ).rowcount

        return requeued, failed

    async def reset_failed_events(self, now: datetime) -> int:
        """FAILED -> PENDING with a fresh attempt budget."""
        conn = self._get_connection()
        timestamp = to_db_time(now)
        cursor = conn.execute(
            """
            UPDATE outbox_events
            SET status = 'PENDING', attempts = 0, last_error = NULL,
                scheduled_for = ?, updated_at = ?
            WHERE status = 'FAILED'
            """,
            (timestamp, timestamp),
        )
        conn.commit()
        return cursor.rowcount

    async def purge_completed_events(self, before: datetime) -> int:
        """Delete COMPLETED rows processed before the cutoff."""
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM outbox_events WHERE status = 'COMPLETED' AND processed_at < ?",
            (to_db_time(before),),
        )
        conn.commit()
        return cursor.rowcount

    async def count_events_by_status(self) -> dict[OutboxStatus, int]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT status, COUNT(*) AS count FROM outbox_events GROUP BY status"
        ).fetchall()
        counts = {status: 0 for status in OutboxStatus}
        for row in rows:
            counts[OutboxStatus(row["status"])] = row["count"]
        return counts

    async def oldest_pending_created_at(self) -> datetime | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT MIN(created_at) AS oldest FROM outbox_events WHERE status = 'PENDING'"
        ).fetchone()
        return from_db_time(row["oldest"]) if row else None

    # ------------------------------------------------------------------
    # Security audit
    # ------------------------------------------------------------------

    async def log_security_event(self, event: SecurityEvent) -> None:
        """
        Write a security audit row.

        Args:
            event: Audit event (rate limit check, reset, operator action)
        """
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO security_events (
                event_type, identifier, endpoint, attempts, allowed,
                ip_address, timestamp, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_type.value,
                event.identifier,
                event.endpoint,
                event.attempts,
                None if event.allowed is None else int(event.allowed),
                event.ip_address,
                to_db_time(event.timestamp),
                json.dumps(event.metadata) if event.metadata else None,
            ),
        )
        conn.commit()

    async def list_security_events(
        self, identifier: str | None = None, limit: int = 100
    ) -> list[SecurityEvent]:
        """Most recent audit rows, optionally for one identifier."""
        conn = self._get_connection()
        if identifier is None:
            rows = conn.execute(
                "SELECT * FROM security_events ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM security_events WHERE identifier = ? ORDER BY id DESC LIMIT ?",
                (identifier, limit),
            ).fetchall()

        return [
            SecurityEvent(
                event_type=SecurityEventType(row["event_type"]),
                identifier=row["identifier"],
                endpoint=row["endpoint"],
                attempts=row["attempts"],
                allowed=None if row["allowed"] is None else bool(row["allowed"]),
                ip_address=row["ip_address"],
                timestamp=from_db_time(row["timestamp"]),
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
