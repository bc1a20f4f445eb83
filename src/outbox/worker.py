"""
Outbox worker: at-least-once delivery of side effects.

Each tick:
1. Reclaim PROCESSING rows whose lease expired (crashed or stuck worker)
2. Select a bounded batch of due PENDING rows
3. Claim each row with a compare-and-swap update; rows lost to another
   worker are skipped
4. Dispatch to the handler for its event type (bounded concurrency)
5. Success -> COMPLETED; failure -> attempts + 1, then PENDING with
   exponential backoff on the persisted attempt count, or FAILED once
   attempts reach max_attempts

Handler errors never reach the poll loop, and one event's failure never
aborts the rest of the batch.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from src.config import OutboxSettings, get_settings
from src.models.outbox import OutboxBatchResult, OutboxEvent, OutboxStats, OutboxStatus
from src.observability.metrics import (
    track_outbox_batch,
    track_outbox_event,
    track_outbox_reaped,
    update_outbox_queue_depth,
)
from src.outbox.handlers import OutboxHandlerRegistry, UnknownEventTypeError
from src.resilience.backoff import compute_backoff
from src.resilience.retry import DATABASE_PROFILE, RetryPolicy, get_retry_policy, with_retry
from src.storage.database import ResilienceDatabase, add_to_outbox

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_LENGTH = 1000
LEASE_EXPIRED_ERROR = "Lease expired while PROCESSING"


def utcnow() -> datetime:
    return datetime.now(UTC)


class OutboxWorker:
    """
    Polling processor over the outbox_events table.

    Safe to run in several processes at once: the claim is a
    compare-and-swap, so a row is only ever processed by the worker that
    moved it to PROCESSING.
    """

    def __init__(
        self,
        database: ResilienceDatabase,
        handlers: OutboxHandlerRegistry,
        settings: OutboxSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        db_policy: RetryPolicy | None = None,
    ):
        """
        Initialize outbox worker.

        Args:
            database: Outbox storage
            handlers: Handler registry keyed by event type
            settings: Polling, concurrency and backoff settings
            clock: UTC time source (injectable for tests)
            db_policy: Retry policy for bookkeeping writes (default: database profile)
        """
        self.database = database
        self.handlers = handlers
        self.settings = settings or get_settings().outbox
        self._clock = clock
        self._db_policy = db_policy or get_retry_policy(DATABASE_PROFILE)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _db_call(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(fn, self._db_policy)

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        event_type: str,
        payload: dict[str, Any],
        max_attempts: int | None = None,
        scheduled_for: datetime | None = None,
    ) -> OutboxEvent:
        """
        Enqueue an event in its own transaction.

        Producers that also write business rows should call
        add_to_outbox(tx, ...) inside their own transaction instead.
        """
        with self.database.transaction() as tx:
            return add_to_outbox(
                tx,
                event_type,
                payload,
                max_attempts=max_attempts or self.settings.default_max_attempts,
                scheduled_for=scheduled_for,
                now=self._clock(),
            )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_outbox(self, batch_size: int | None = None) -> OutboxBatchResult:
        """
        Process one batch of due events.

        Args:
            batch_size: Max events to select (default from settings)

        Returns:
            OutboxBatchResult: Per-outcome counts
        """
        started = time.perf_counter()
        batch_size = batch_size or self.settings.batch_size

        events = await self.database.fetch_due_events(self._clock(), batch_size)
        result = OutboxBatchResult(selected=len(events))
        if not events:
            return result

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def run(event: OutboxEvent) -> OutboxStatus | None:
            async with semaphore:
                return await self._process_event(event)

        outcomes = await asyncio.gather(*(run(event) for event in events))

        for outcome in outcomes:
            if outcome is None:
                continue
            result.claimed += 1
            if outcome is OutboxStatus.COMPLETED:
                result.completed += 1
            elif outcome is OutboxStatus.PENDING:
                result.retried += 1
            elif outcome is OutboxStatus.FAILED:
                result.failed += 1

        duration = time.perf_counter() - started
        track_outbox_batch(duration)
        logger.info(
            f"Outbox batch processed: {result.completed} completed, "
            f"{result.retried} retrying, {result.failed} failed",
            extra={
                "selected": result.selected,
                "claimed": result.claimed,
                "skipped": result.skipped,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return result

    async def _process_event(self, event: OutboxEvent) -> OutboxStatus | None:
        """
        Claim, dispatch and record one event.

        Returns:
            The row's new status, or None if it was not claimed or its
            bookkeeping failed (the lease reaper recovers the row)
        """
        try:
            now = self._clock()
            lease_until = now + timedelta(seconds=self.settings.lease_seconds)
            claimed = await self._db_call(
                lambda: self.database.claim_event(event.id, now, lease_until)
            )
            if not claimed:
                logger.debug(
                    "Outbox event already claimed by another worker",
                    extra={"event_id": event.id},
                )
                return None

            try:
                handler = self.handlers.get(event.event_type)
                await handler(event.payload)
            except Exception as e:
                return await self._record_failure(event, e)

            completed = await self._db_call(
                lambda: self.database.mark_completed(event.id, self._clock())
            )
            if not completed:
                logger.warning(
                    "Outbox event lease lost before completion was recorded",
                    extra={"event_id": event.id},
                )
                return None
            track_outbox_event(event.event_type, "completed")
            logger.info(
                f"Outbox event completed: {event.event_type}",
                extra={
                    "event_id": event.id,
                    "event_type": event.event_type,
                    "attempt": event.attempts + 1,
                },
            )
            return OutboxStatus.COMPLETED

        except Exception as e:
            logger.error(
                f"Outbox bookkeeping failed for event {event.id}: {e}",
                exc_info=True,
                extra={"event_id": event.id, "event_type": event.event_type},
            )
            return None

    async def _record_failure(self, event: OutboxEvent, error: Exception) -> OutboxStatus | None:
        attempts = event.attempts + 1
        message = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
        now = self._clock()

        if attempts >= event.max_attempts:
            retry_at = None
            status = OutboxStatus.FAILED
        else:
            delay = compute_backoff(
                attempts,
                self.settings.backoff_base_seconds,
                factor=self.settings.backoff_factor,
                max_delay=self.settings.backoff_max_seconds,
                jitter=self.settings.backoff_jitter,
            )
            retry_at = now + timedelta(seconds=delay)
            status = OutboxStatus.PENDING

        updated = await self._db_call(
            lambda: self.database.record_event_failure(event.id, attempts, message, now, retry_at)
        )
        if not updated:
            logger.warning(
                "Outbox event lease lost before failure was recorded",
                extra={"event_id": event.id},
            )
            return None

        log_context = {
            "event_id": event.id,
            "event_type": event.event_type,
            "attempts": attempts,
            "max_attempts": event.max_attempts,
            "error_type": type(error).__name__,
        }

        if isinstance(error, UnknownEventTypeError):
            logger.error(
                f"No handler registered for outbox event type {event.event_type}",
                extra=log_context,
            )
            track_outbox_event(event.event_type, "unknown_type")

        if status is OutboxStatus.FAILED:
            logger.error(
                f"Outbox event failed permanently: {event.event_type}: {error}",
                extra=log_context,
            )
            track_outbox_event(event.event_type, "failed")
        else:
            logger.warning(
                f"Outbox event failed, retry scheduled: {event.event_type}: {error}",
                extra={**log_context, "retry_at": retry_at.isoformat()},
            )
            track_outbox_event(event.event_type, "retry")

        return status

    async def requeue_stale_events(self) -> int:
        """
        Reclaim PROCESSING rows whose lease expired.

        Each reclaim consumes an attempt, so a handler that crashes the
        worker cannot loop forever.

        Returns:
            int: Rows reclaimed (requeued or parked as FAILED)
        """
        requeued, failed = await self.database.requeue_stale_events(
            self._clock(), LEASE_EXPIRED_ERROR
        )
        total = requeued + failed
        if total:
            logger.warning(
                f"Reclaimed {total} outbox events with expired leases",
                extra={"requeued": requeued, "failed": failed},
            )
            track_outbox_reaped(total)
        return total

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def retry_failed_events(self) -> int:
        """
        Reset FAILED events to PENDING with a fresh attempt budget.

        Use once a downstream outage is resolved.
        """
        count = await self.database.reset_failed_events(self._clock())
        logger.info(f"Reset {count} failed outbox events for retry")
        return count

    async def get_outbox_stats(self) -> OutboxStats:
        counts = await self.database.count_events_by_status()
        oldest = await self.database.oldest_pending_created_at()

        stats = OutboxStats(
            pending=counts[OutboxStatus.PENDING],
            processing=counts[OutboxStatus.PROCESSING],
            completed=counts[OutboxStatus.COMPLETED],
            failed=counts[OutboxStatus.FAILED],
            total=sum(counts.values()),
            oldest_pending_age_seconds=(
                max(0.0, (self._clock() - oldest).total_seconds()) if oldest else None
            ),
        )
        update_outbox_queue_depth({status.value.lower(): count for status, count in counts.items()})
        return stats

    async def purge_completed_events(self, older_than_days: int | None = None) -> int:
        """
        Delete COMPLETED events processed more than older_than_days ago.

        Returns:
            int: Rows deleted
        """
        days = older_than_days if older_than_days is not None else self.settings.purge_after_days
        cutoff = self._clock() - timedelta(days=days)
        count = await self.database.purge_completed_events(cutoff)
        logger.info(f"Purged {count} completed outbox events older than {days} days")
        return count

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def run_once(self) -> OutboxBatchResult | None:
        """One tick: reap stale leases, then process a batch."""
        try:
            await self.requeue_stale_events()
            return await self.process_outbox()
        except Exception as e:
            logger.error(f"Outbox tick failed: {e}", exc_info=True)
            return None

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.settings.poll_interval_seconds)

    def start(self) -> None:
        """Start the poll loop on the running event loop."""
        if self.running:
            logger.warning("Outbox worker already running")
            return

        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Outbox worker started (interval: {self.settings.poll_interval_seconds}s)",
            extra={
                "batch_size": self.settings.batch_size,
                "max_concurrency": self.settings.max_concurrency,
            },
        )

    async def stop(self) -> None:
        """Stop the poll loop; in-flight rows are recovered by the lease reaper."""
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Outbox worker stopped")
