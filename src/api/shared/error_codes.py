"""
Standard Error Codes

Consistent error codes across all API endpoints with HTTP status mapping.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """API error codes."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BAD_REQUEST = "BAD_REQUEST"

    # Business logic errors
    OPPORTUNITY_NOT_FOUND = "OPPORTUNITY_NOT_FOUND"
    STAGE_NOT_FOUND = "STAGE_NOT_FOUND"
    PIPELINE_NOT_FOUND = "PIPELINE_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    LINE_ITEM_NOT_FOUND = "LINE_ITEM_NOT_FOUND"
    CONTACT_ROLE_NOT_FOUND = "CONTACT_ROLE_NOT_FOUND"
    REQUIRED_FIELDS_MISSING = "REQUIRED_FIELDS_MISSING"
    INVALID_STATE = "INVALID_STATE"

    # Server errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


# HTTP status code mapping
ERROR_STATUS_CODES = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.REQUIRED_FIELDS_MISSING: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.OPPORTUNITY_NOT_FOUND: 404,
    ErrorCode.STAGE_NOT_FOUND: 404,
    ErrorCode.PIPELINE_NOT_FOUND: 404,
    ErrorCode.PRODUCT_NOT_FOUND: 404,
    ErrorCode.LINE_ITEM_NOT_FOUND: 404,
    ErrorCode.CONTACT_ROLE_NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INVALID_STATE: 422,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
}


def get_status_code(error_code: ErrorCode) -> int:
    """
    Get HTTP status code for an error code.

    Args:
        error_code: The error code

    Returns:
        HTTP status code (defaults to 500 if not mapped)
    """
    return ERROR_STATUS_CODES.get(error_code, 500)


def is_client_error(error_code: ErrorCode) -> bool:
    """Check if the error code represents a client error (4xx)."""
    status = get_status_code(error_code)
    return 400 <= status < 500


def is_server_error(error_code: ErrorCode) -> bool:
    """Check if the error code represents a server error (5xx)."""
    status = get_status_code(error_code)
    return status >= 500
