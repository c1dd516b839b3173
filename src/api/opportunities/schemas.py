"""
Request bodies for the opportunity endpoints.

Create, patch, line item and contact role inputs reuse the core models;
only the transition bodies are API-specific.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ...core.opportunities.models import Opportunity


class ChangeStageRequest(BaseModel):
    """Move an open opportunity to another open stage."""
    stage_id: str
    field_values: Dict[str, Any] = Field(
        default_factory=dict,
        description="Values satisfying the target stage's required fields",
    )
    note: Optional[str] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    forecast_category: Optional[str] = None


class CloseWonRequest(BaseModel):
    close_reason_id: Optional[str] = None
    final_amount: Optional[Decimal] = Field(None, ge=0)
    close_date: Optional[date] = None
    notes: Optional[str] = None
    competitor: Optional[str] = None


class CloseLostRequest(BaseModel):
    close_reason_id: Optional[str] = None
    close_date: Optional[date] = None
    notes: Optional[str] = None
    competitor: Optional[str] = None


class ReopenRequest(BaseModel):
    stage_id: str
    reason: Optional[str] = None
    probability: Optional[int] = Field(None, ge=0, le=100)


class DuplicateCheckResult(BaseModel):
    has_duplicates: bool
    duplicates: List[Opportunity]
