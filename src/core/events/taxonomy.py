"""
Side-effect Taxonomy

Every opportunity mutation emits one audit entry and one activity entry.

Event naming convention: {domain}.{action}
- domain: audit, activity
- action: the audit action (create, update, delete) or the activity type
"""

from enum import Enum
from typing import Dict


class SideEffectKind(str, Enum):
    """Top-level event domains."""
    AUDIT = "audit"
    ACTIVITY = "activity"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ActivityType(str, Enum):
    """Opportunity timeline entries."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STAGE_CHANGED = "stage_changed"
    WON = "opportunity_won"
    LOST = "opportunity_lost"
    REOPENED = "opportunity_reopened"
    CONTACT_ADDED = "contact_added"
    CONTACT_REMOVED = "contact_removed"
    LINE_ITEM_ADDED = "line_item_added"
    LINE_ITEM_UPDATED = "line_item_updated"
    LINE_ITEM_REMOVED = "line_item_removed"
    BUNDLE_ADDED = "bundle_added"
    BUNDLE_REMOVED = "bundle_removed"


# Combined lookup for all event types
ALL_EVENT_TYPES: Dict[str, str] = {
    **{f"{SideEffectKind.AUDIT.value}.{a.value}": a.name for a in AuditAction},
    **{f"{SideEffectKind.ACTIVITY.value}.{a.value}": a.name for a in ActivityType},
}


def validate_event_type(event_type: str) -> bool:
    """Check if event type is valid."""
    return event_type in ALL_EVENT_TYPES


def get_domain(event_type: str) -> str:
    """Extract domain from event type."""
    return event_type.split(".")[0] if "." in event_type else "unknown"
