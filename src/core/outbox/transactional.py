"""
Transactional Side-effect Publisher

Runs an opportunity mutation and its audit/activity side effects as one
unit. With the outbox enabled, side effects are written to the outbox in
the same database transaction. With it disabled, they are queued in memory
and handed to the collaborators only after the transaction commits; a
failing collaborator is logged and never undoes the mutation.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from ..database.adapter import DatabaseAdapter, get_database
from ..events.models import ActivityEntry, AuditEntry, SideEffectEvent
from ..events.publisher import publish_event
from ..observability import record_counter
from .writer import OutboxWriter, is_outbox_enabled

logger = logging.getLogger(__name__)


class TransactionalPublisher:
    """
    Publishes side effects transactionally with business operations.

    Usage:
        async with TransactionalPublisher() as txn:
            # Your business logic (joins the open transaction)
            await txn.db.execute("UPDATE opportunities ...")

            # Emit side effects (same transaction)
            await txn.emit_audit(audit_entry)
            await txn.emit_activity(activity_entry)
        # Both commit together or both rollback
    """

    def __init__(self, db: Optional[DatabaseAdapter] = None, outbox_enabled: Optional[bool] = None):
        self.db: Optional[DatabaseAdapter] = db
        self._outbox_enabled = is_outbox_enabled() if outbox_enabled is None else outbox_enabled
        self._writer: Optional[OutboxWriter] = None
        self._events: List[SideEffectEvent] = []
        self._transaction = None

    async def __aenter__(self):
        if self.db is None:
            self.db = await get_database()
        self._writer = OutboxWriter(self.db)
        self._events = []
        self._transaction = self.db.transaction()
        await self._transaction.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self._transaction.__aexit__(exc_type, exc_val, exc_tb)
        if exc_type is not None:
            # Rolled back, outbox rows and queued effects go with it
            self._events = []
            return False

        if not self._outbox_enabled:
            await self.flush()
        return False

    async def emit(self, event: SideEffectEvent) -> SideEffectEvent:
        """
        Emit an event: an outbox row in the current transaction, or a
        queued in-memory delivery when the outbox is disabled.
        """
        if self._outbox_enabled:
            await self._writer.write(event)
        self._events.append(event)
        return event

    async def emit_audit(self, entry: AuditEntry) -> SideEffectEvent:
        return await self.emit(SideEffectEvent.for_audit(entry))

    async def emit_activity(self, entry: ActivityEntry) -> SideEffectEvent:
        return await self.emit(SideEffectEvent.for_activity(entry))

    async def flush(self) -> int:
        """
        Deliver queued events after commit.

        Returns:
            Number of events delivered
        """
        delivered = 0
        for event in self._events:
            try:
                await publish_event(event)
                delivered += 1
            except Exception as e:
                record_counter("side_effects_failed_total", attributes={"kind": event.kind.value})
                logger.warning(
                    "Side effect delivery failed: type=%s entity_id=%s error=%s",
                    event.event_type,
                    event.entity_id,
                    e,
                )
        return delivered

    @property
    def emitted_events(self) -> List[SideEffectEvent]:
        """Get list of events emitted in this transaction."""
        return self._events.copy()


@asynccontextmanager
async def transactional_publish(db: Optional[DatabaseAdapter] = None):
    """
    Context manager for transactional side-effect publishing.

    Usage:
        async with transactional_publish() as txn:
            await repository.save(opportunity)
            await txn.emit_activity(entry)
    """
    publisher = TransactionalPublisher(db)
    async with publisher:
        yield publisher
