"""
Trace ID Middleware

Adds trace_id, correlation_id and the acting user to every request.
"""

import contextvars
from uuid import uuid4
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

ACTOR_HEADER = "X-Actor-ID"

# Context variables for request-scoped values
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_trace_id() -> str:
    """
    Get the current trace ID.

    Returns the trace ID from the current request context,
    or generates a new one if not set.
    """
    return trace_id_var.get() or str(uuid4())


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None if not set."""
    return correlation_id_var.get() or None


def set_trace_id(trace_id: str) -> None:
    trace_id_var.set(trace_id)


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


class TraceMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts or generates trace/correlation IDs.

    Headers:
    - X-Trace-ID: Unique ID for this request (generated if not provided)
    - X-Correlation-ID: ID linking related requests (e.g., an opportunity id)
    - X-Actor-ID: User performing the request, echoed into request.state
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-ID") or str(uuid4())
        trace_id_var.set(trace_id)

        correlation_id = request.headers.get("X-Correlation-ID") or ""
        correlation_id_var.set(correlation_id)

        request.state.trace_id = trace_id
        request.state.correlation_id = correlation_id
        request.state.actor_id = request.headers.get(ACTOR_HEADER) or None

        response = await call_next(request)

        response.headers["X-Trace-ID"] = trace_id
        if correlation_id:
            response.headers["X-Correlation-ID"] = correlation_id

        return response
