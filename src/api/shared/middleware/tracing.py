"""
OpenTelemetry Tracing Middleware

FastAPI middleware for request spans and HTTP metrics.
"""

import time
import logging
from typing import Callable
from uuid import uuid4

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from ....core.observability.tracing import (
    get_tracer, extract_trace_context,
    add_correlation_id_to_span, get_trace_id
)
from ....core.observability.metrics import record_counter, record_histogram
from .trace import ACTOR_HEADER

logger = logging.getLogger(__name__)

UNTRACED_PATHS = ("/health", "/health/ready")


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that creates OpenTelemetry spans for HTTP requests.

    Extracts incoming trace context, opens a server span carrying the
    standard HTTP attributes and the actor, records request count and
    duration, and returns the trace id in X-Trace-ID.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in UNTRACED_PATHS:
            return await call_next(request)

        context = extract_trace_context(dict(request.headers))
        trace_id = request.headers.get("X-Trace-ID") or uuid4().hex
        correlation_id = request.headers.get("X-Correlation-ID")

        tracer = get_tracer()
        start_time = time.time()

        with tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            context=context,
            kind=trace.SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.url": str(request.url),
                "http.route": request.url.path,
                "http.scheme": request.url.scheme,
                "http.user_agent": request.headers.get("user-agent", ""),
                "actor.id": request.headers.get(ACTOR_HEADER, ""),
                "trace_id": trace_id,
            }
        ) as span:
            if correlation_id:
                add_correlation_id_to_span(correlation_id, span)

            try:
                response = await call_next(request)
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                record_counter("http_requests_total", 1, {
                    "method": request.method,
                    "path": request.url.path,
                    "status": "500"
                })
                raise

            span.set_attribute("http.status_code", response.status_code)
            record_counter("http_requests_total", 1, {
                "method": request.method,
                "path": request.url.path,
                "status": str(response.status_code)
            })
            record_histogram("http_request_duration_seconds", time.time() - start_time, {
                "method": request.method,
                "path": request.url.path
            })

            response.headers["X-Trace-ID"] = get_trace_id() or trace_id
            return response
