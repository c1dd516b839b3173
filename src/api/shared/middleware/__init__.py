"""
Shared API Middleware

Cross-cutting concerns for all API endpoints:
- Error handling with standardized responses
- Trace ID propagation for observability
- OpenTelemetry distributed tracing
"""

from .error_handler import register_error_handlers
from .trace import (
    ACTOR_HEADER,
    TraceMiddleware,
    get_trace_id,
    get_correlation_id,
    set_trace_id,
    set_correlation_id,
)
from .tracing import TracingMiddleware

__all__ = [
    # Error handling
    "register_error_handlers",
    # Trace
    "ACTOR_HEADER",
    "TraceMiddleware",
    "get_trace_id",
    "get_correlation_id",
    "set_trace_id",
    "set_correlation_id",
    # OpenTelemetry Tracing
    "TracingMiddleware",
]
