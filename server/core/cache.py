"""Redis connection service.

Owns the shared ``redis.asyncio`` client used by the Redis queue backend and
the health check. When Redis is disabled the service stays idle and callers
use the in-process queue runtime instead.
"""

from typing import Optional

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger

logger = get_logger(__name__)


class CacheService:
    """Lazily connected Redis client with startup/shutdown hooks."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None

    @property
    def required(self) -> bool:
        """Redis is mandatory when it backs the job queues."""
        return self.settings.queue_backend == "redis"

    async def startup(self):
        """Connect and ping. Failure is fatal only when Redis backs the queues."""
        if not (self.settings.redis_enabled and self.settings.redis_url):
            logger.info("Redis disabled", queue_backend=self.settings.queue_backend)
            return

        try:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=max(5.0, self.settings.redis_poll_timeout * 2),
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
            await self.redis.ping()
            logger.info("Redis connected", url=self.settings.redis_url)
        except Exception as e:
            self.redis = None
            if self.required:
                logger.error("Redis connection failed", error=str(e))
                raise
            logger.warning("Redis connection failed, continuing without it", error=str(e))

    async def shutdown(self):
        """Close the Redis connection pool."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis connections closed")

    def client(self) -> redis.Redis:
        """The connected client; raises when Redis was never started."""
        if self.redis is None:
            raise RuntimeError("Redis not connected")
        return self.redis

    async def ping(self) -> bool:
        if self.redis is None:
            return False
        return bool(await self.redis.ping())
