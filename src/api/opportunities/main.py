#!/usr/bin/env python3
"""
SalesOps Opportunity API
========================

FastAPI application for the opportunity pipeline: CRUD, stage
transitions, line items, contact roles, duplicate detection, board and
forecast views.
"""

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ...core.collaborators.scope import RecordScope
from ...core.config import Settings, get_settings
from ...core.database import apply_migrations, close_database, get_database
from ...core.observability import configure_logging, init_metrics, init_tracing
from ...core.outbox import outbox_lifespan
from ...core.opportunities import reset_opportunity_service
from ..shared.middleware import register_error_handlers, TraceMiddleware, TracingMiddleware
from ..shared.routers.health import router as health_router
from .routers import contacts_router, line_items_router, opportunities_router

logger = logging.getLogger(__name__)


# =============================================================================
# OBSERVABILITY INITIALIZATION
# =============================================================================

def init_observability(settings: Settings):
    """Initialize observability components (tracing, metrics, logging)."""
    configure_logging(
        level=settings.LOG_LEVEL,
        structured=settings.LOG_STRUCTURED,
        service_name=settings.SERVICE_NAME,
    )

    otlp_endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if otlp_endpoint or settings.OTEL_CONSOLE_EXPORT:
        init_tracing(
            service_name=settings.SERVICE_NAME,
            service_version=settings.APP_VERSION,
            otlp_endpoint=otlp_endpoint,
            console_export=settings.OTEL_CONSOLE_EXPORT,
        )
        init_metrics(
            service_name=settings.SERVICE_NAME,
            otlp_endpoint=otlp_endpoint,
            console_export=settings.OTEL_CONSOLE_EXPORT,
        )
        logger.info("OpenTelemetry observability initialized")


# =============================================================================
# LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    settings = get_settings()
    init_observability(settings)

    for issue in settings.validate():
        logger.warning(issue)

    db = await get_database()
    applied = await apply_migrations(db)
    if applied:
        logger.info("Applied migrations: %s", ", ".join(applied))

    async with outbox_lifespan():
        yield

    reset_opportunity_service()
    await close_database()
    logger.info("Database connection closed")


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(record_scope: Optional[RecordScope] = None) -> FastAPI:
    """
    Build the application.

    Args:
        record_scope: Resolves which owners' records an actor may see.
            Defaults to unrestricted visibility.
    """
    settings = get_settings()

    app = FastAPI(
        title="SalesOps Opportunity API",
        description="REST API for the opportunity pipeline",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.record_scope = record_scope

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.add_middleware(TraceMiddleware)
    app.add_middleware(TracingMiddleware)

    app.include_router(health_router)
    app.include_router(opportunities_router)
    app.include_router(line_items_router)
    app.include_router(contacts_router)

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the SalesOps opportunity API")
    parser.add_argument("--host", default=settings.API_HOST)
    parser.add_argument("--port", type=int, default=settings.API_PORT)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    import uvicorn
    uvicorn.run(
        "src.api.opportunities.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
