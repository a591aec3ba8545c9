"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports the ledger database, the job queue broker and billing configuration.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "billing_oracle": "configured" if settings.REVENUECAT_API_KEY else "missing",
        "image_backend": "configured" if settings.IMAGE_API_URL else "missing",
    }

    try:
        from database import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Only scheduled jobs and the purchase throttle depend on Redis.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    status_code = 503 if health_status["database"] != "up" else 200
    return JSONResponse(status_code=status_code, content=health_status)


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
