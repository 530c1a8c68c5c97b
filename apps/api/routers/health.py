"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Report database, Redis and prediction service configuration status.
    """
    report = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "prediction_service": "configured" if settings.REPLICATE_API_TOKEN else "missing",
        "webhooks": "enabled" if settings.PREDICTION_WEBHOOK_URL else "disabled",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        report["database"] = "up"
    except Exception as e:
        report["database"] = f"down: {e}"
        report["status"] = "degraded"

    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        report["redis"] = "up"
    except Exception as e:
        report["redis"] = f"down: {e}"
        report["status"] = "degraded"

    return report


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: generation needs a prediction service token."""
    missing = [] if settings.REPLICATE_API_TOKEN else ["REPLICATE_API_TOKEN"]
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
