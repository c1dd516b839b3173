"""
Outbox Processor

Background worker that polls the outbox and delivers audit/activity
events to their collaborators, with retry logic and exponential backoff.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..config import get_settings
from ..database.adapter import DatabaseAdapter, affected_rows, get_database
from ..events.models import SideEffectEvent
from ..events.publisher import publish_event
from ..events.taxonomy import SideEffectKind
from ..observability import record_counter, record_histogram
from .models import OutboxStatus

logger = logging.getLogger(__name__)

# Retry intervals for exponential backoff (in seconds)
RETRY_INTERVALS = [5, 15, 60, 300, 900]  # 5s, 15s, 1m, 5m, 15m


def calculate_next_attempt(attempts: int, now: Optional[datetime] = None) -> datetime:
    """Calculate next attempt time with exponential backoff."""
    interval_idx = min(max(attempts - 1, 0), len(RETRY_INTERVALS) - 1)
    interval = RETRY_INTERVALS[interval_idx]
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=interval)


def event_from_row(entry: Dict[str, Any]) -> SideEffectEvent:
    """Rebuild the side-effect envelope stored in an outbox row."""
    event_data = entry["event_data"]
    if isinstance(event_data, str):
        event_data = json.loads(event_data)

    return SideEffectEvent(
        id=str(entry["id"]),
        correlation_id=str(entry["correlation_id"]),
        entity_id=str(entry["aggregate_id"]),
        kind=SideEffectKind(entry["aggregate_type"]),
        event_type=entry["event_type"],
        event_data=event_data,
        schema_version=entry.get("schema_version") or 1,
        source="outbox",
    )


class OutboxProcessor:
    """
    Processes outbox entries and delivers side effects.

    Features:
    - Polls outbox for pending entries
    - Delivers to the audit/activity collaborators
    - Retries failed deliveries with exponential backoff
    - Marks entries as delivered or dead
    """

    def __init__(
        self,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        db: Optional[DatabaseAdapter] = None
    ):
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._db = db
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the processor."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("OutboxProcessor started")

    async def stop(self):
        """Stop the processor."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("OutboxProcessor stopped")

    async def _run(self):
        """Main processing loop."""
        while self._running:
            try:
                processed = await self.process_batch()
                if processed == 0:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"OutboxProcessor error: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)

    async def process_batch(self, now: Optional[datetime] = None) -> int:
        """
        Deliver one batch of due entries.

        Returns:
            Number of entries attempted
        """
        db = await self._get_db()
        now = now or datetime.now(timezone.utc)
        started = time.monotonic()

        entries = await db.fetch(
            """
            SELECT id, correlation_id, aggregate_type, aggregate_id,
                   event_type, schema_version, event_data,
                   status, attempts, max_attempts, created_at
            FROM outbox
            WHERE status = $1 AND (next_attempt_at IS NULL OR next_attempt_at <= $2)
            ORDER BY created_at ASC
            LIMIT $3
            """,
            OutboxStatus.PENDING.value,
            now,
            self.batch_size
        )

        if not entries:
            return 0

        for entry in entries:
            await self._deliver_entry(db, entry, now)

        record_histogram("outbox_processing_duration_seconds", time.monotonic() - started)
        return len(entries)

    async def _deliver_entry(self, db: DatabaseAdapter, entry: Dict[str, Any], now: datetime):
        """Deliver a single outbox entry."""
        entry_id = entry["id"]
        attempts = entry["attempts"] + 1

        await db.execute(
            """
            UPDATE outbox
            SET status = $1, last_attempt_at = $2, attempts = $3
            WHERE id = $4
            """,
            OutboxStatus.PROCESSING.value,
            now,
            attempts,
            entry_id
        )

        try:
            await publish_event(event_from_row(entry))

            await db.execute(
                """
                UPDATE outbox
                SET status = $1, delivered_at = $2, error_message = NULL
                WHERE id = $3
                """,
                OutboxStatus.DELIVERED.value,
                datetime.now(timezone.utc),
                entry_id
            )
            record_counter("outbox_processed_total", attributes={"status": "delivered"})
            logger.debug(f"Delivered outbox entry {entry_id}")

        except Exception as e:
            record_counter("side_effects_failed_total", attributes={"kind": entry["aggregate_type"]})
            next_attempt = None
            if attempts >= entry["max_attempts"]:
                status = OutboxStatus.DEAD.value
                logger.error(
                    f"Outbox entry {entry_id} moved to dead letter after {attempts} attempts: {e}"
                )
            else:
                status = OutboxStatus.PENDING.value
                next_attempt = calculate_next_attempt(attempts, now)
                logger.warning(
                    f"Outbox entry {entry_id} failed (attempt {attempts}), retry at {next_attempt}: {e}"
                )

            await db.execute(
                """
                UPDATE outbox
                SET status = $1, error_message = $2, next_attempt_at = $3
                WHERE id = $4
                """,
                status,
                str(e)[:500],
                next_attempt,
                entry_id
            )
            record_counter("outbox_processed_total", attributes={"status": status})

    async def get_stats(self) -> Dict[str, int]:
        """Get outbox statistics."""
        db = await self._get_db()

        rows = await db.fetch(
            """
            SELECT status, COUNT(*) AS count
            FROM outbox
            GROUP BY status
            """
        )

        stats = {status.value: 0 for status in OutboxStatus}
        for row in rows:
            stats[row["status"]] = row["count"]

        return stats

    async def get_dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get entries that have exceeded max attempts."""
        db = await self._get_db()

        return await db.fetch(
            """
            SELECT * FROM outbox
            WHERE status = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            OutboxStatus.DEAD.value,
            limit
        )

    async def retry_dead_letter(self, entry_id: str) -> bool:
        """Reset a dead letter entry for retry."""
        db = await self._get_db()

        result = await db.execute(
            """
            UPDATE outbox
            SET status = $1, attempts = 0, next_attempt_at = NULL, error_message = NULL
            WHERE id = $2 AND status = $3
            """,
            OutboxStatus.PENDING.value,
            entry_id,
            OutboxStatus.DEAD.value
        )

        reset = affected_rows(result) > 0
        if reset:
            logger.info(f"Reset dead letter entry for retry: {entry_id}")
        return reset


# Global processor instance
_processor: Optional[OutboxProcessor] = None


async def start_outbox_processor(
    poll_interval: Optional[float] = None,
    batch_size: Optional[int] = None
) -> OutboxProcessor:
    """Start the global outbox processor."""
    global _processor

    settings = get_settings()
    if _processor is None:
        _processor = OutboxProcessor(
            poll_interval=poll_interval or settings.OUTBOX_POLL_INTERVAL,
            batch_size=batch_size or settings.OUTBOX_BATCH_SIZE
        )

    await _processor.start()
    return _processor


async def stop_outbox_processor():
    """Stop the global outbox processor."""
    global _processor
    if _processor:
        await _processor.stop()
        _processor = None


def get_outbox_processor() -> Optional[OutboxProcessor]:
    """Get the global outbox processor instance."""
    return _processor
