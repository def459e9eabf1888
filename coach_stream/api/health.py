"""Health check endpoints for the thread API."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from coach_stream import __version__
from coach_stream.core.config import settings
from coach_stream.core.redis import test_redis_connection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=None)
@router.head("/health")
async def detailed_health_check():
    """Health of the components the API depends on."""
    redis_ok = await test_redis_connection()
    if not redis_ok:
        logger.warning("Health check: Redis unavailable")

    components = {"redis_connection": "available" if redis_ok else "unavailable"}
    return JSONResponse(
        content={
            "status": "healthy" if redis_ok else "unhealthy",
            "components": components,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "settings": {"agent_url": settings.agent_url},
        },
        status_code=200 if redis_ok else 503,
    )
