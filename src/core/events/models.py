"""
Event Models

Pydantic models for the audit and activity side effects emitted by every
opportunity mutation, and the envelope they travel in through the outbox.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .taxonomy import ActivityType, AuditAction, SideEffectKind


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class AuditEntry(BaseModel):
    """One audit-trail record: what changed on an entity and who changed it."""

    entity_type: str
    entity_id: str
    action: AuditAction
    changes: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    previous_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    performed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class ActivityEntry(BaseModel):
    """One timeline entry shown on an entity's activity feed."""

    entity_type: str
    entity_id: str
    activity_type: ActivityType
    title: str
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    performed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class EventBase(BaseModel):
    """Base event model with required fields."""

    id: str = Field(default_factory=_new_id)
    correlation_id: str
    event_type: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    schema_version: int = 1
    source: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class SideEffectEvent(EventBase):
    """Envelope carrying an audit or activity entry to its collaborator."""

    kind: SideEffectKind
    entity_id: str

    @classmethod
    def for_audit(cls, entry: AuditEntry, source: str = "opportunities") -> "SideEffectEvent":
        # correlation_id = entity_id so every effect of one record groups together
        return cls(
            correlation_id=entry.entity_id,
            entity_id=entry.entity_id,
            kind=SideEffectKind.AUDIT,
            event_type=f"{SideEffectKind.AUDIT.value}.{entry.action.value}",
            event_data=entry.model_dump(mode="json"),
            source=source,
        )

    @classmethod
    def for_activity(cls, entry: ActivityEntry, source: str = "opportunities") -> "SideEffectEvent":
        return cls(
            correlation_id=entry.entity_id,
            entity_id=entry.entity_id,
            kind=SideEffectKind.ACTIVITY,
            event_type=f"{SideEffectKind.ACTIVITY.value}.{entry.activity_type.value}",
            event_data=entry.model_dump(mode="json"),
            source=source,
        )

    def audit_entry(self) -> AuditEntry:
        return AuditEntry.model_validate(self.event_data)

    def activity_entry(self) -> ActivityEntry:
        return ActivityEntry.model_validate(self.event_data)
