"""
Cache service using Redis
Holds cross-process job claims and short-lived listener health snapshots
"""

import json
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class CacheError(Exception):
    """Cache operation error"""
    pass


class CacheService:
    """Redis-based cache service with JSON serialization and namespaced keys"""

    def __init__(self, redis_url: str, namespace: str = "mbsync"):
        self.redis_url = redis_url
        self.namespace = namespace
        self.redis_client: Optional[redis.Redis] = None

    async def initialize(self):
        """Initialize Redis connection"""
        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                max_connections=20
            )

            await self.redis_client.ping()
            logger.info("Cache service initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize cache service", error=str(e))
            raise CacheError(f"Cache initialization failed: {str(e)}") from e

    async def close(self):
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Cache service closed")

    async def health_check(self) -> str:
        """Check cache health"""
        try:
            await self.redis_client.ping()
            return "healthy"
        except Exception as e:
            logger.error("Cache health check failed", error=str(e))
            return "unhealthy"

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @staticmethod
    def _serialize(value: Any) -> str:
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set a value with optional TTL in seconds"""
        try:
            serialized_value = self._serialize(value)
            if ttl:
                await self.redis_client.setex(self._key(key), ttl, serialized_value)
            else:
                await self.redis_client.set(self._key(key), serialized_value)
            return True

        except Exception as e:
            logger.error("Error setting cache value", key=key, error=str(e))
            return False

    async def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        """
        Atomically claim a key (SET NX EX)

        Raises:
            CacheError: When Redis cannot be reached; callers decide whether to proceed
        """
        try:
            claimed = await self.redis_client.set(self._key(key), self._serialize(value), nx=True, ex=ttl)
            return bool(claimed)
        except Exception as e:
            logger.error("Error claiming cache key", key=key, error=str(e))
            raise CacheError(f"Claim failed for {key}: {str(e)}") from e

    async def get(self, key: str, default: Any = None) -> Any:
        """Get a value, decoding JSON where possible"""
        try:
            value = await self.redis_client.get(self._key(key))
            if value is None:
                return default
            try:
                return json.loads(value)
            except (json.JSONDecodeError, TypeError):
                return value

        except Exception as e:
            logger.error("Error getting cache value", key=key, error=str(e))
            return default

    async def delete(self, key: str) -> bool:
        try:
            result = await self.redis_client.delete(self._key(key))
            return result > 0
        except Exception as e:
            logger.error("Error deleting cache value", key=key, error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        try:
            return await self.redis_client.exists(self._key(key)) > 0
        except Exception as e:
            logger.error("Error checking cache key", key=key, error=str(e))
            return False
