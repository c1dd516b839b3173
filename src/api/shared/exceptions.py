"""
API Exception Classes

Exceptions that map to standard error responses, and the translation of
core domain errors into them.
"""

from typing import Optional, List

from ...core.errors import (
    ConflictError as DomainConflictError,
    DomainError,
    NotFoundError as DomainNotFoundError,
    RequiredFieldsError,
    ValidationError as DomainValidationError,
)
from .error_codes import ErrorCode, get_status_code
from .responses import ErrorDetail


class APIException(Exception):
    """
    Base exception for API errors.

    All custom API exceptions should inherit from this class.
    The error handler middleware will catch these and return
    standardized error responses.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
        trace_id: Optional[str] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        self.trace_id = trace_id
        self.status_code = get_status_code(code)
        super().__init__(message)


class ValidationError(APIException):
    """
    Validation error for invalid request data.

    HTTP Status: 400
    """

    def __init__(
        self,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
        trace_id: Optional[str] = None
    ):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
            trace_id=trace_id
        )


# Use specific error code if available
NOT_FOUND_CODES = {
    "Opportunity": ErrorCode.OPPORTUNITY_NOT_FOUND,
    "Stage": ErrorCode.STAGE_NOT_FOUND,
    "Pipeline": ErrorCode.PIPELINE_NOT_FOUND,
    "Product": ErrorCode.PRODUCT_NOT_FOUND,
    "Line item": ErrorCode.LINE_ITEM_NOT_FOUND,
    "Contact role": ErrorCode.CONTACT_ROLE_NOT_FOUND,
}


class NotFoundError(APIException):
    """
    Resource not found error.

    HTTP Status: 404
    """

    def __init__(
        self,
        resource: str,
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
        trace_id: Optional[str] = None
    ):
        if message is None:
            message = f"{resource} not found"
            if resource_id:
                message = f"{resource} with ID '{resource_id}' not found"

        code = NOT_FOUND_CODES.get(resource, ErrorCode.NOT_FOUND)

        super().__init__(code=code, message=message, trace_id=trace_id)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(APIException):
    """
    Conflict error (e.g., duplicate, already exists).

    HTTP Status: 409
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFLICT,
        trace_id: Optional[str] = None
    ):
        super().__init__(code=code, message=message, trace_id=trace_id)


class BusinessLogicError(APIException):
    """
    Business logic violation error.

    Use this for domain-specific errors like invalid state transitions.

    HTTP Status: Varies by error code (typically 422)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
        trace_id: Optional[str] = None
    ):
        super().__init__(
            code=code,
            message=message,
            details=details,
            trace_id=trace_id
        )


def translate_domain_error(exc: DomainError, trace_id: Optional[str] = None) -> APIException:
    """Map a core domain error onto the API exception carrying its status and code."""
    details = [ErrorDetail(**detail) for detail in exc.details()] or None

    if isinstance(exc, DomainNotFoundError):
        return NotFoundError(exc.resource, exc.resource_id, message=exc.message, trace_id=trace_id)
    if isinstance(exc, RequiredFieldsError):
        return BusinessLogicError(ErrorCode.REQUIRED_FIELDS_MISSING, exc.message, details, trace_id)
    if isinstance(exc, DomainValidationError):
        return ValidationError(exc.message, details, trace_id)
    if isinstance(exc, DomainConflictError):
        return ConflictError(exc.message, trace_id=trace_id)
    # InvalidStateError, StageConfigurationError
    return BusinessLogicError(ErrorCode.INVALID_STATE, exc.message, details, trace_id)
