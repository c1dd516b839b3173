"""
Audit and activity collaborators

The audit log and the activity feed are owned by other services. These are
the contracts the publisher delivers to, plus defaults that write each
entry to the application log.
"""

import logging
from typing import Protocol

from .models import ActivityEntry, AuditEntry

logger = logging.getLogger(__name__)


class AuditLogger(Protocol):
    async def log(self, entry: AuditEntry) -> None: ...


class ActivityRecorder(Protocol):
    async def record(self, entry: ActivityEntry) -> None: ...


class LoggingAuditLogger:
    async def log(self, entry: AuditEntry) -> None:
        logger.info(
            "audit %s %s/%s",
            entry.action.value,
            entry.entity_type,
            entry.entity_id,
            extra={
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "action": entry.action.value,
                "changes": entry.changes,
                "performed_by": entry.performed_by,
            },
        )


class LoggingActivityRecorder:
    async def record(self, entry: ActivityEntry) -> None:
        logger.info(
            "activity %s: %s",
            entry.activity_type.value,
            entry.title,
            extra={
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "activity_type": entry.activity_type.value,
                "metadata": entry.metadata,
                "performed_by": entry.performed_by,
            },
        )
