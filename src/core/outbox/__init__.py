"""
Outbox Pattern Implementation

Audit and activity side effects are persisted with the business
transaction and delivered afterwards with retries.

Usage:
    from src.core.outbox import transactional_publish

    async with transactional_publish() as txn:
        # Atomic with the opportunity mutation
        await txn.emit_audit(audit_entry)
        await txn.emit_activity(activity_entry)
"""

from .writer import OutboxWriter, is_outbox_enabled
from .processor import (
    OutboxProcessor,
    calculate_next_attempt,
    get_outbox_processor,
    start_outbox_processor,
    stop_outbox_processor,
)
from .models import OutboxEntry, OutboxStatus
from .transactional import TransactionalPublisher, transactional_publish
from .lifecycle import outbox_lifespan

__all__ = [
    "OutboxWriter",
    "is_outbox_enabled",
    "OutboxProcessor",
    "calculate_next_attempt",
    "get_outbox_processor",
    "start_outbox_processor",
    "stop_outbox_processor",
    "OutboxEntry",
    "OutboxStatus",
    "TransactionalPublisher",
    "transactional_publish",
    "outbox_lifespan",
]
