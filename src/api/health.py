"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health         - basic liveness (always 200 if app running)
- GET /health/ready   - readiness check (DB + Redis)
- GET /health/workers - background worker heartbeats
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from src.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
WORKER_NAMES = ("contact_dispatcher", "grace_period_sweeper")


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis is degraded-not-down: locks and dedup fall back to proceeding without it.
    """
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/workers")
async def worker_health_check():
    """Heartbeat freshness per worker (keys expire when a worker stalls)."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()

        workers = {}
        for name in WORKER_NAMES:
            heartbeat = await redis.get(f"nurture:worker_health:{name}")
            workers[name] = {
                "healthy": heartbeat is not None,
                "last_heartbeat": heartbeat,
            }
        return {"healthy": all(w["healthy"] for w in workers.values()), "workers": workers}
    except Exception as e:
        logger.warning("Worker heartbeat check failed: %s", str(e))
        return {"healthy": False, "note": "Unable to check worker heartbeats"}
