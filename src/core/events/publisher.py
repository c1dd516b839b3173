"""
Side-effect Publisher

Delivers side-effect events to the collaborator that owns them:
- audit.* events -> AuditLogger.log
- activity.* events -> ActivityRecorder.record

Called by the outbox processor for persisted entries, and after commit for
entries queued in memory when the outbox is disabled.
"""

import logging
from typing import List, Optional

from ..observability import record_counter
from .models import SideEffectEvent
from .sinks import ActivityRecorder, AuditLogger, LoggingActivityRecorder, LoggingAuditLogger
from .taxonomy import SideEffectKind, get_domain, validate_event_type

logger = logging.getLogger(__name__)


class SideEffectPublisher:
    """
    Routes side-effect events to the audit and activity collaborators.

    Usage:
        publisher = SideEffectPublisher(audit_logger, activity_recorder)
        await publisher.publish(event)

        # Or batch publish
        await publisher.publish_batch([event1, event2])
    """

    def __init__(
        self,
        audit_logger: Optional[AuditLogger] = None,
        activity_recorder: Optional[ActivityRecorder] = None,
    ):
        self.audit_logger = audit_logger or LoggingAuditLogger()
        self.activity_recorder = activity_recorder or LoggingActivityRecorder()

    async def publish(self, event: SideEffectEvent) -> str:
        """
        Deliver a single event. Collaborator errors propagate to the caller.

        Returns the event ID.
        """
        if not validate_event_type(event.event_type):
            logger.warning(f"Unknown event type: {event.event_type} - publishing anyway")

        domain = get_domain(event.event_type)

        if domain == SideEffectKind.AUDIT.value:
            await self.audit_logger.log(event.audit_entry())
        elif domain == SideEffectKind.ACTIVITY.value:
            await self.activity_recorder.record(event.activity_entry())
        else:
            raise ValueError(f"No collaborator for event type {event.event_type}")

        record_counter("side_effects_delivered_total", attributes={"kind": domain})
        logger.debug(
            "Delivered side effect: type=%s entity_id=%s",
            event.event_type,
            event.entity_id,
        )
        return event.id

    async def publish_batch(self, events: List[SideEffectEvent]) -> List[str]:
        """
        Publish multiple events in order.

        Returns list of event IDs.
        """
        ids = []
        for event in events:
            ids.append(await self.publish(event))
        return ids


# Global publisher instance
_publisher: Optional[SideEffectPublisher] = None


def get_publisher() -> SideEffectPublisher:
    """Get the global side-effect publisher instance."""
    global _publisher
    if _publisher is None:
        _publisher = SideEffectPublisher()
    return _publisher


def configure_publisher(
    audit_logger: Optional[AuditLogger] = None,
    activity_recorder: Optional[ActivityRecorder] = None,
) -> SideEffectPublisher:
    """Install the collaborators side effects are delivered to."""
    global _publisher
    _publisher = SideEffectPublisher(audit_logger, activity_recorder)
    return _publisher


def reset_publisher() -> None:
    global _publisher
    _publisher = None


async def publish_event(event: SideEffectEvent) -> str:
    """Publish a single event through the global publisher."""
    return await get_publisher().publish(event)
