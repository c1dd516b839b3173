"""
SalesOps Side-effect Events

Audit and activity entries emitted by opportunity mutations, their
taxonomy, and the publisher that hands them to the owning collaborators.

Usage:
    from src.core.events import (
        ActivityEntry,
        ActivityType,
        SideEffectEvent,
        publish_event,
    )

    entry = ActivityEntry(
        entity_type="opportunities",
        entity_id=opportunity.id,
        activity_type=ActivityType.STAGE_CHANGED,
        title="Stage changed to Proposal",
    )
    await publish_event(SideEffectEvent.for_activity(entry))
"""

from .taxonomy import (
    SideEffectKind,
    AuditAction,
    ActivityType,
    validate_event_type,
    get_domain,
    ALL_EVENT_TYPES,
)

from .models import (
    AuditEntry,
    ActivityEntry,
    EventBase,
    SideEffectEvent,
)

from .sinks import (
    AuditLogger,
    ActivityRecorder,
    LoggingAuditLogger,
    LoggingActivityRecorder,
)

from .publisher import (
    SideEffectPublisher,
    get_publisher,
    configure_publisher,
    reset_publisher,
    publish_event,
)


__all__ = [
    # Taxonomy
    "SideEffectKind",
    "AuditAction",
    "ActivityType",
    "validate_event_type",
    "get_domain",
    "ALL_EVENT_TYPES",
    # Models
    "AuditEntry",
    "ActivityEntry",
    "EventBase",
    "SideEffectEvent",
    # Sinks
    "AuditLogger",
    "ActivityRecorder",
    "LoggingAuditLogger",
    "LoggingActivityRecorder",
    # Publisher
    "SideEffectPublisher",
    "get_publisher",
    "configure_publisher",
    "reset_publisher",
    "publish_event",
]
