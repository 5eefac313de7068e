"""
Redis caching backend for packed permission rule sets.
"""

from typing import Any, Dict, Optional

import redis.asyncio as redis
from shared.logging import get_logger
from shared.errors import ExternalServiceError


class RedisCacheBackend:
    """Stores packed rule sets in Redis with a per-entry TTL."""

    PERMISSIONS_PREFIX = "permissions:"

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.logger = get_logger("permissions.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ExternalServiceError("redis", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    def _key(self, user_id: str) -> str:
        return f"{self.PERMISSIONS_PREFIX}{user_id}"

    async def get(self, user_id: str) -> Optional[str]:
        """Get a cached packed rule set; errors count as a miss."""
        try:
            return await self.redis.get(self._key(user_id))
        except Exception as e:
            self.logger.error("Error reading cached permissions", user_id=user_id, error=str(e))
            return None

    async def set(self, user_id: str, value: str, ttl_seconds: int) -> bool:
        try:
            await self.redis.setex(self._key(user_id), ttl_seconds, value)
            self.logger.debug("Cached permissions", user_id=user_id, ttl=ttl_seconds)
            return True
        except Exception as e:
            self.logger.error("Error caching permissions", user_id=user_id, error=str(e))
            return False

    async def delete(self, user_id: str) -> bool:
        """Remove an entry. A stale entry must not survive, so errors propagate."""
        try:
            removed = await self.redis.delete(self._key(user_id))
        except Exception as e:
            self.logger.error("Error invalidating cached permissions", user_id=user_id, error=str(e))
            raise ExternalServiceError("redis", str(e), {"user_id": user_id}) from e
        return bool(removed)

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        try:
            info = await self.redis.info()
            hits = info.get("keyspace_hits", 0)
            misses = info.get("keyspace_misses", 0)
            total = hits + misses
            return {
                "backend": "redis",
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "keyspace_hits": hits,
                "keyspace_misses": misses,
                "hit_rate": hits / total if total else 0.0,
            }
        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {"backend": "redis"}

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
