"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database and Redis reachability plus payment configuration.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "creem": "configured" if settings.CREEM_API_KEY and settings.CREEM_WEBHOOK_SECRET else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs rate limiting, so an outage degrades but does not fail.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.CREEM_API_KEY:
        missing.append("CREEM_API_KEY")
    if not settings.CREEM_WEBHOOK_SECRET:
        missing.append("CREEM_WEBHOOK_SECRET")

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
