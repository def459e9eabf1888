"""Main FastAPI application for Coach Stream."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from coach_stream import __version__
from coach_stream.api.health import router as health_router
from coach_stream.api.threads import router as threads_router
from coach_stream.core.config import settings
from coach_stream.core.redis import test_redis_connection

# Configure logging with consistent format
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format=LOG_FORMAT,
    datefmt=LOG_DATE_FORMAT,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan context manager for startup and shutdown."""
    logger.info(f"Starting up {settings.app_name}...")

    if await test_redis_connection():
        logger.info("✅ Redis connection available")
    else:
        # Let the app start anyway so health checks can report it
        logger.error("⚠️ Redis connection unavailable, thread endpoints will fail")

    logger.info(f"Agent URL: {settings.agent_url}")
    logger.info(f"Debug mode: {settings.debug}")

    yield

    logger.info("Shutting down FastAPI application...")


app = FastAPI(
    title=settings.app_name,
    description="Stored conversation threads of the coaching agent",
    version=__version__,
    lifespan=lifespan,
    debug=settings.debug,
)


@app.get("/", response_class=PlainTextResponse)
@app.head("/")
async def root_health_check():
    """Simple, fast health check for load balancer - no external dependencies."""
    return f"{settings.app_name} is running! 🚀"


app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(threads_router, prefix="/api/v1", tags=["Threads"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "coach_stream.api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
