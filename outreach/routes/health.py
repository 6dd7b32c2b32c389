"""
Health check endpoints with database pool and redis monitoring.
"""

import time

from fastapi import APIRouter

from outreach.config import settings
from outreach.db.pool import db_health_check
from outreach.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "pulse-outreach"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check across the durable store and, when configured, redis.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                }
            )

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 2) Redis, only when something depends on it
    if settings.REDIS_URL:
        t0 = time.time()
        redis_ok = await fast_redis.ping()
        checks["redis"] = {
            "ok": redis_ok,
            "latency_ms": round((time.time() - t0) * 1000, 1),
            "pulse_cache": settings.use_redis_cache(),
        }
        overall_ok = overall_ok and redis_ok
    else:
        checks["redis"] = {"ok": True, "configured": False}

    # 3) Configuration
    config_issues = []
    if not settings.INTERNAL_API_TOKEN:
        config_issues.append("INTERNAL_API_TOKEN not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
