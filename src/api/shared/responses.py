"""
Standard API Response Models

Provides consistent response shapes across all endpoints.
"""

from datetime import datetime, timezone
from typing import TypeVar, Generic, Optional, List
from uuid import uuid4

from pydantic import BaseModel, Field


T = TypeVar('T')


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class ResponseMeta(BaseModel):
    """Metadata included in all responses."""

    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class SuccessResponse(BaseModel, Generic[T]):
    """
    Standard success response wrapper.

    Response shape:
    {
        "data": { ... },
        "meta": {
            "trace_id": "abc-123",
            "correlation_id": "opportunity-456",
            "timestamp": "2026-01-19T12:00:00Z"
        }
    }
    """

    data: T
    meta: ResponseMeta = Field(default_factory=ResponseMeta)

    @classmethod
    def create(
        cls,
        data: T,
        correlation_id: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> "SuccessResponse[T]":
        meta = ResponseMeta(
            trace_id=trace_id or str(uuid4()),
            correlation_id=correlation_id
        )
        return cls(data=data, meta=meta)


class ListMeta(ResponseMeta):
    """Metadata for list responses with page-based pagination."""

    total: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0
    has_more: bool = False


class ListResponse(BaseModel, Generic[T]):
    """
    Standard list response with pagination.

    Response shape:
    {
        "data": [ ... ],
        "meta": {
            "total": 100,
            "page": 1,
            "limit": 20,
            "total_pages": 5,
            "has_more": true,
            "trace_id": "abc-123"
        }
    }
    """

    data: List[T]
    meta: ListMeta

    @classmethod
    def create(
        cls,
        data: List[T],
        total: int,
        page: int = 1,
        limit: int = 20,
        correlation_id: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> "ListResponse[T]":
        total_pages = (total + limit - 1) // limit if limit else 0
        meta = ListMeta(
            trace_id=trace_id or str(uuid4()),
            correlation_id=correlation_id,
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_more=page < total_pages
        )
        return cls(data=data, meta=meta)


class ErrorDetail(BaseModel):
    """Detailed error information for validation errors."""

    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ErrorBody(BaseModel):
    """Error body with code, message, and details."""

    code: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow)


class ErrorResponse(BaseModel):
    """
    Standard error response.

    Response shape:
    {
        "error": {
            "code": "REQUIRED_FIELDS_MISSING",
            "message": "Human-readable error message",
            "details": [...],
            "trace_id": "abc-123",
            "timestamp": "2026-01-19T12:00:00Z"
        }
    }
    """

    error: ErrorBody
