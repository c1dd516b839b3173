"""
Shared API Utilities

Common responses, error codes, exceptions and middleware for all API
endpoints.
"""

from .responses import (
    ResponseMeta,
    SuccessResponse,
    ListMeta,
    ListResponse,
    ErrorDetail,
    ErrorBody,
    ErrorResponse,
)

from .error_codes import (
    ErrorCode,
    get_status_code,
    is_client_error,
    is_server_error,
)

from .exceptions import (
    APIException,
    ValidationError,
    NotFoundError,
    ConflictError,
    BusinessLogicError,
    translate_domain_error,
)

from .middleware import (
    register_error_handlers,
    TraceMiddleware,
    TracingMiddleware,
    get_trace_id,
    get_correlation_id,
)

__all__ = [
    # Responses
    "ResponseMeta",
    "SuccessResponse",
    "ListMeta",
    "ListResponse",
    "ErrorDetail",
    "ErrorBody",
    "ErrorResponse",
    # Error codes
    "ErrorCode",
    "get_status_code",
    "is_client_error",
    "is_server_error",
    # Exceptions
    "APIException",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "BusinessLogicError",
    "translate_domain_error",
    # Middleware
    "register_error_handlers",
    "TraceMiddleware",
    "TracingMiddleware",
    "get_trace_id",
    "get_correlation_id",
]
