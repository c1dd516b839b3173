"""
Outbox Models

Rows of the outbox table: side-effect events persisted with the business
transaction and delivered afterwards.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxStatus(str, Enum):
    """Status of an outbox entry."""
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD = "dead"  # Exceeded max attempts


class OutboxEntry(BaseModel):
    """An entry in the outbox table."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    correlation_id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    schema_version: int = 1
    event_data: Dict[str, Any] = Field(default_factory=dict)

    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    max_attempts: int = 10

    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
