"""
Redis caching utilities shared by the Orders and Inventory services.

Reads follow the cache-aside pattern. Writers never enumerate key spaces to
invalidate: each cached aggregate lives under a namespace with a version
counter, read keys embed the current version, and invalidation is a single
INCR per namespace. Superseded entries simply age out through their TTL.

Cache failures are logged and swallowed; they must never fail the business
operation that triggered them.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

VERSION_PREFIX = "cache:version:"


# Namespaces used by the services
def order_ns(order_id: int) -> str:
    return f"order:{order_id}"


def orders_by_user_ns(user_id: int) -> str:
    return f"orders:user:{user_id}"


def orders_by_status_ns(status_id: int) -> str:
    return f"orders:status:{status_id}"


def product_ns(product_id: int) -> str:
    return f"product:{product_id}"


ALL_ORDERS_NS = "orders:all"
ALL_PRODUCTS_NS = "products:all"


class CacheStore:
    """
    Thin async wrapper over a Redis client.

    Args:
        redis: Connected ``redis.asyncio`` client created with
            ``decode_responses=True``
    """

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def get(self, key: str) -> Optional[Any]:
        """
        Get a value from Redis cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found (or on cache error)
        """
        try:
            value = await self.redis.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Cache get error for '{key}': {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        """
        Set a value in Redis cache with TTL.

        Args:
            key: Cache key
            value: Value to cache (will be JSON serialized)
            ttl: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        try:
            await self.redis.setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning(f"Cache set error for '{key}': {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self.redis.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Cache delete error for '{key}': {e}")
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a pattern.

        Uses SCAN rather than KEYS so large key spaces do not block the
        server. Kept for operational purges; services invalidate through
        :meth:`invalidate`.

        Args:
            pattern: Pattern to match (e.g., "orders:*")

        Returns:
            Number of keys deleted
        """
        deleted = 0
        try:
            batch = []
            async for key in self.redis.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.redis.delete(*batch)
        except Exception as e:
            logger.warning(f"Cache delete pattern error for '{pattern}': {e}")
        return deleted

    async def version(self, namespace: str) -> int:
        try:
            value = await self.redis.get(VERSION_PREFIX + namespace)
            return int(value) if value else 0
        except Exception as e:
            logger.warning(f"Cache version read error for '{namespace}': {e}")
            return 0

    async def key_for(self, namespace: str, *parts: Any) -> str:
        """Build the read key for the current version of a namespace."""
        key = f"{namespace}:v{await self.version(namespace)}"
        if parts:
            key += ":" + ":".join(str(part) for part in parts)
        return key

    async def invalidate(self, *namespaces: str) -> None:
        """
        Bump the version of every namespace so existing entries are no
        longer read.

        Args:
            namespaces: Namespaces touched by a committed mutation
        """
        for namespace in dict.fromkeys(namespaces):
            try:
                await self.redis.incr(VERSION_PREFIX + namespace)
            except Exception as e:
                logger.warning(f"Cache invalidation error for '{namespace}': {e}")

    async def get_or_load(self, namespace: str, loader, ttl: int = 300) -> Any:
        """
        Cache-aside read: return the cached value for the namespace, or call
        ``loader`` (an async callable), cache and return its result.

        ``None`` results are not cached.
        """
        key = await self.key_for(namespace)
        cached = await self.get(key)
        if cached is not None:
            return cached
        result = await loader()
        if result is not None:
            await self.set(key, result, ttl)
        return result
