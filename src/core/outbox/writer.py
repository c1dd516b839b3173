"""
Outbox Writer

Writes side-effect events to the outbox table within the same transaction
as the opportunity mutation that produced them.
"""

import json
import logging
from typing import List, Optional

from ..config import get_settings
from ..database.adapter import DatabaseAdapter, get_database
from ..events.models import SideEffectEvent
from .models import OutboxEntry, OutboxStatus

logger = logging.getLogger(__name__)


def is_outbox_enabled() -> bool:
    """Check if outbox pattern is enabled."""
    return get_settings().OUTBOX_ENABLED


class OutboxWriter:
    """
    Writes events to the outbox for reliable delivery.

    Usage:
        async with db.transaction():
            # Your business logic here...
            await OutboxWriter(db).write(SideEffectEvent.for_audit(entry))
        # Transaction commits, outbox entry is persisted
    """

    def __init__(self, db: Optional[DatabaseAdapter] = None, max_attempts: Optional[int] = None):
        self._db = db
        self._max_attempts = max_attempts or get_settings().OUTBOX_MAX_ATTEMPTS

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def write(self, event: SideEffectEvent) -> OutboxEntry:
        """
        Write an event to the outbox.

        Args:
            event: Audit or activity envelope

        Returns:
            The created OutboxEntry
        """
        db = await self._get_db()

        entry = OutboxEntry(
            id=event.id,
            correlation_id=event.correlation_id,
            aggregate_type=event.kind.value,
            aggregate_id=event.entity_id,
            event_type=event.event_type,
            schema_version=event.schema_version,
            event_data=event.event_data,
            max_attempts=self._max_attempts,
            created_at=event.created_at,
        )

        await db.execute(
            """
            INSERT INTO outbox (
                id, correlation_id, aggregate_type, aggregate_id,
                event_type, schema_version, event_data,
                status, attempts, max_attempts, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            entry.id,
            entry.correlation_id,
            entry.aggregate_type,
            entry.aggregate_id,
            entry.event_type,
            entry.schema_version,
            json.dumps(entry.event_data),
            OutboxStatus(entry.status).value,
            entry.attempts,
            entry.max_attempts,
            entry.created_at
        )

        logger.debug(
            "Wrote event to outbox: id=%s type=%s correlation=%s",
            entry.id, entry.event_type, entry.correlation_id
        )

        return entry

    async def write_batch(self, events: List[SideEffectEvent]) -> List[OutboxEntry]:
        """
        Write multiple events to the outbox in the current transaction.

        Returns:
            List of created OutboxEntry objects
        """
        return [await self.write(event) for event in events]
