"""
Outbox Lifecycle Management

Integrates the outbox processor with the FastAPI application lifecycle.
"""

import logging
from contextlib import asynccontextmanager

from ..config import get_settings
from .processor import start_outbox_processor, stop_outbox_processor

logger = logging.getLogger(__name__)


def is_outbox_processor_enabled() -> bool:
    """
    Check if this instance should run the outbox processor.

    In multi-instance deployments, only one should process to avoid
    duplicate delivery attempts.
    """
    return get_settings().OUTBOX_PROCESSOR_ENABLED


@asynccontextmanager
async def outbox_lifespan():
    """
    Lifespan context manager for outbox processor.

    Usage in FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan():
                yield

        app = FastAPI(lifespan=lifespan)
    """
    settings = get_settings()
    if settings.OUTBOX_ENABLED and is_outbox_processor_enabled():
        logger.info("Starting outbox processor...")
        processor = await start_outbox_processor()
        try:
            yield processor
        finally:
            logger.info("Stopping outbox processor...")
            await stop_outbox_processor()
    else:
        reason = []
        if not settings.OUTBOX_ENABLED:
            reason.append("OUTBOX_ENABLED=false")
        if not is_outbox_processor_enabled():
            reason.append("OUTBOX_PROCESSOR_ENABLED=false")
        logger.info(f"Outbox processor disabled: {', '.join(reason)}")
        yield None
