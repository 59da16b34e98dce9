"""
Redis client configuration and connection management
Redis客户端配置和连接管理 - 用于限流和房间事件发布
"""

import redis.asyncio as redis
from typing import Optional
from bunker.core.config import settings
import logging
import json
import asyncio
import time

logger = logging.getLogger(__name__)


class RedisManager:
    """Redis manager with connection recovery"""

    def __init__(self):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = None
        self._connection_retries = 0
        self._max_retries = 3
        self._retry_delay = 1.0
        self._health_check_interval = 30
        self._last_health_check = 0

    async def initialize(self):
        """Initialize Redis connection pool"""
        try:
            self.pool = redis.ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_timeout=True,
                health_check_interval=30,
                encoding="utf-8",
                decode_responses=True
            )

            self.client = redis.Redis(connection_pool=self.pool)

            await self._test_connection()
            logger.info("Redis manager initialized successfully")

        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error(f"Failed to initialize Redis manager: {e}")
            # 开发环境允许无 Redis 运行（限流放行，事件仅本地广播）
            if settings.ENVIRONMENT == "production":
                raise

    async def _test_connection(self) -> bool:
        """Test Redis connection health"""
        try:
            if not self.client:
                return False

            await self.client.ping()
            self._connection_retries = 0
            self._last_health_check = time.time()
            return True

        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning(f"Redis connection test failed: {e}")
            return False

    async def _reconnect(self) -> bool:
        """Attempt to reconnect to Redis with exponential backoff"""
        if self._connection_retries >= self._max_retries:
            logger.error("Maximum Redis reconnection attempts exceeded")
            return False

        self._connection_retries += 1
        delay = self._retry_delay * (2 ** (self._connection_retries - 1))

        logger.info(f"Attempting Redis reconnection {self._connection_retries}/{self._max_retries} after {delay}s")
        await asyncio.sleep(delay)

        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.aclose()

            await self.initialize()
            return True

        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error(f"Redis reconnection attempt {self._connection_retries} failed: {e}")
            return False

    async def health_check(self) -> bool:
        """Perform periodic health check"""
        current_time = time.time()
        if current_time - self._last_health_check < self._health_check_interval:
            return True

        if await self._test_connection():
            return True

        return await self._reconnect()

    async def get_client(self) -> redis.Redis:
        """Get Redis client with health check"""
        if not self.client or not await self.health_check():
            raise RuntimeError("Redis connection unavailable")
        return self.client

    async def publish_message(self, channel: str, message: dict) -> int:
        """Publish message to Redis channel"""
        client = await self.get_client()
        return await client.publish(channel, json.dumps(message, default=str))

    async def close(self):
        """Close Redis connections"""
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.aclose()

        self.client = None
        self.pool = None
        logger.info("Redis connections closed")


# Global Redis manager instance
redis_manager = RedisManager()


async def init_redis():
    """Initialize Redis connection pool"""
    await redis_manager.initialize()


async def close_redis():
    """Close Redis connections"""
    await redis_manager.close()


async def redis_health_check() -> dict:
    """Redis health check for monitoring"""
    try:
        is_healthy = await redis_manager.health_check() if redis_manager.client else False
        return {
            "status": "healthy" if is_healthy else "unhealthy",
            "connection_retries": redis_manager._connection_retries,
            "last_health_check": redis_manager._last_health_check
        }
    except Exception as e:
        return {
            "status": "error",
            "error": str(e),
            "connection_retries": redis_manager._connection_retries
        }
