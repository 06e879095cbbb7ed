"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine, missing_tables
from services.rate_limiter import rate_limiter
from services.token_ledger import TIER_DEGRADED, TIER_DURABLE

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports the durable store, the shared rate-limit store and the ledger tier.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "ledger_tier": TIER_DURABLE,
        "ledger_fallback": "enabled" if settings.LEDGER_MEMORY_FALLBACK_ENABLED else "disabled",
        "rate_limiter": "degraded" if rate_limiter.degraded else "shared",
    }

    database_up = False
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
        database_up = True
    except Exception as e:
        logger.warning("Health check database probe failed: %s", e)
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    if not database_up and settings.LEDGER_MEMORY_FALLBACK_ENABLED:
        health_status["ledger_tier"] = TIER_DEGRADED
    elif not database_up:
        health_status["ledger_tier"] = "unavailable"

    try:
        r = redis.from_url(
            settings.REDIS_URL,
            socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
        )
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once the ledger, usage and grant tables exist."""
    try:
        missing = await missing_tables(engine)
    except Exception as e:
        return JSONResponse(status_code=503, content={"ready": False, "error": f"database: {str(e)}"})

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
