"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + queue worker heartbeat)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.database import get_db
from nurture.workers.queue_processor import HEARTBEAT_KEY

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check - database is critical, Redis and the worker heartbeat are informational."""
    checks = {"database": False, "redis": False, "queue_processor": None}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from nurture.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        checks["queue_processor"] = await redis.get(HEARTBEAT_KEY)
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    return {
        "status": "ready" if checks["database"] and checks["redis"] else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
