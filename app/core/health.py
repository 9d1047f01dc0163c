"""Health check endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CacheBackend, get_cache_backend
from app.core.database import get_db
from app.core.exceptions import CacheError
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: Literal["ok", "degraded", "unhealthy"]
    database: Literal["connected", "disconnected"] | None = None
    cache: Literal["connected", "disconnected"] | None = None


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint.

    Returns:
        Health status response.
    """
    logger.debug("health.check_started")
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def readiness_check(
    db: AsyncSession = Depends(get_db),
    cache: CacheBackend = Depends(get_cache_backend),
) -> HealthResponse:
    """Readiness check including database and cache connectivity.

    The cache is best-effort, so a cache outage only degrades readiness
    while a database outage makes the service unhealthy.

    Args:
        db: Database session dependency.
        cache: Cache backend dependency.

    Returns:
        Health status with database and cache state.
    """
    logger.debug("health.readiness_check_started")

    database_state: Literal["connected", "disconnected"] = "connected"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(
            "health.database_disconnected",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        database_state = "disconnected"

    cache_state: Literal["connected", "disconnected"] = "connected"
    try:
        await cache.ping()
    except CacheError as e:
        logger.warning("health.cache_disconnected", error=e.message)
        cache_state = "disconnected"

    if database_state == "disconnected":
        status: Literal["ok", "degraded", "unhealthy"] = "unhealthy"
    elif cache_state == "disconnected":
        status = "degraded"
    else:
        status = "ok"

    logger.info("health.readiness_checked", database=database_state, cache=cache_state)
    return HealthResponse(status=status, database=database_state, cache=cache_state)
