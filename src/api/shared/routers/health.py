"""
Health Check Endpoints

Liveness and readiness for container orchestration.
"""

from datetime import datetime, timezone
from typing import Dict, Any

from fastapi import APIRouter, Response

from ....core.config import get_settings
from ....core.database.adapter import get_database
from ....core.outbox.processor import get_outbox_processor

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check.

    Returns 200 if the service is running.
    """
    settings = get_settings()
    return {
        "status": "healthy",
        "service": settings.SERVICE_NAME,
        "timestamp": _now(),
        "version": settings.APP_VERSION,
    }


@router.get("/health/ready")
async def readiness_check(response: Response) -> Dict[str, Any]:
    """
    Readiness probe.

    Returns 200 if the database answers, 503 otherwise. Outbox processor
    state is reported but does not affect readiness.
    """
    settings = get_settings()
    checks = {}
    all_healthy = True

    try:
        db = await get_database()
        await db.fetchval("SELECT 1")
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)[:100]}"
        all_healthy = False

    if settings.OUTBOX_ENABLED:
        processor = get_outbox_processor()
        checks["outbox_processor"] = "running" if processor and processor.is_running else "not running"

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now(),
    }
