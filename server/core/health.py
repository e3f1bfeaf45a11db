"""Health check utilities.

Provides uptime tracking and the payload served by the /health endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

import psutil

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from core.cache import CacheService
    from services.queue.recovery import JobRecoveryService
    from services.queue.runtime import QueueRuntime

logger = get_logger(__name__)

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_memory_mb() -> float:
    """Current process resident memory in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


async def check_database(database: "Database") -> bool:
    try:
        return await database.ping()
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return False


async def check_redis(cache: "CacheService") -> bool:
    try:
        return await cache.ping()
    except Exception as e:
        logger.warning("Redis health check failed", error=str(e))
        return False


async def get_health_status(
    database: "Database",
    cache: "CacheService",
    settings: "Settings",
    runtime: "QueueRuntime",
    recovery: "JobRecoveryService" = None,
) -> Dict[str, Any]:
    """Overall status, uptime, and per-dependency checks.

    Redis only counts against overall health when it backs the queues.
    """
    db_healthy = await check_database(database)
    redis_healthy = await check_redis(cache) if settings.redis_enabled else None

    healthy = db_healthy and (redis_healthy or not cache.required)

    return {
        "status": "healthy" if healthy else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "memory_mb": round(get_memory_mb(), 1),
        "checks": {
            "database": db_healthy,
            "redis": redis_healthy,
        },
        "queue": {
            "backend": settings.queue_backend,
            "running": runtime.running,
        },
        "recovery": {
            "enabled": settings.recovery_enabled,
            "running": recovery is not None and recovery.running,
        },
    }
