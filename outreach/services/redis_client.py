# outreach/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from outreach.config import settings
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Pooled async redis client. Every operation degrades to a miss on failure."""

    def __init__(self, url: str | None = None):
        self.url = url
        self.pool = None
        self.client = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        url = self.url or settings.REDIS_URL
        if not url:
            raise RuntimeError("REDIS_URL is not configured")

        try:
            self.pool = ConnectionPool.from_url(
                url,
                max_connections=20,
                retry_on_timeout=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def ping(self) -> bool:
        if not self._initialized:
            return False
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        if not self._initialized:
            return None
        try:
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:30], error=str(e))
            return None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        if not self._initialized:
            return False
        try:
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:30], error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if not self._initialized:
            return False
        try:
            result = await self.client.delete(key)
            return result > 0
        except Exception as e:
            logger.error("Redis DELETE failed", key=key[:30], error=str(e))
            return False

    async def push(self, key: str, value: str) -> bool:
        """Append to a list (RPUSH)."""
        if not self._initialized:
            return False
        try:
            return bool(await self.client.rpush(key, value))
        except Exception as e:
            logger.error("Redis RPUSH failed", key=key[:30], error=str(e))
            return False


# Global instance
fast_redis = FastRedisClient()
