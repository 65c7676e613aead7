"""
Cache layer for scoped task lists and analytics aggregates.

The cache is strictly optional. Every read failure is treated as a miss and
every write failure is logged and ignored, so the API behaves identically
(only slower) when the backend is missing or down.

Invalidation is coarse: any task mutation drops the whole ``tasks:*`` and
``analytics:*`` namespaces.
"""

import fnmatch
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import redis

import config

logger = logging.getLogger(__name__)

TASKS_NAMESPACE = "tasks"
ANALYTICS_NAMESPACE = "analytics"
USER_NAMESPACE = "user"


class MemoryCacheBackend:
    """
    In-process TTL store exposing the subset of the redis client API we use.

    Suitable for a single worker process and for tests. Expired entries are
    dropped lazily on access.
    """

    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if time.monotonic() >= entry["expires_at"]:
                del self._entries[key]
                return None
            return entry["value"]

    def setex(self, key: str, ttl: int, value: str) -> bool:
        with self._lock:
            self._entries[key] = {
                "value": value,
                "expires_at": time.monotonic() + ttl,
            }
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def scan_iter(self, match: str = "*"):
        with self._lock:
            keys = list(self._entries.keys())
        return iter([key for key in keys if fnmatch.fnmatchcase(key, match)])


class CacheService:
    """
    JSON cache over a redis-compatible client.

    Args:
        client: redis.Redis (decode_responses=True) or MemoryCacheBackend;
            None means the cache is unavailable
    """

    def __init__(self, client: Optional[Any] = None):
        self.client = client

    @property
    def available(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Optional[Any]:
        if not self.available:
            return None
        try:
            raw = self.client.get(key)
        except Exception as e:
            logger.warning(f"Cache get failed for {key}, treating as miss: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable cache entry: {key}")
            return None

    def set(self, key: str, value: Any, ttl: int) -> bool:
        if not self.available:
            return False
        try:
            self.client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        if not self.available:
            return False
        try:
            self.client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns the number removed."""
        if not self.available:
            return 0
        try:
            keys = list(self.client.scan_iter(match=pattern))
            if not keys:
                return 0
            self.client.delete(*keys)
            return len(keys)
        except Exception as e:
            logger.warning(f"Cache delete pattern failed for {pattern}: {e}")
            return 0

    def cached(self, key: str, ttl: int, compute: Callable[[], Any]):
        """
        Return ``(value, hit)`` for ``key``, computing and storing on a miss.

        ``compute`` must return a JSON-serializable value so that a hit and a
        miss yield the same shape.
        """
        value = self.get(key)
        if value is not None:
            logger.debug(f"🎯 Cache HIT: {key}")
            return value, True

        logger.debug(f"⏳ Cache MISS: {key}")
        value = compute()
        self.set(key, value, ttl)
        return value, False

    def invalidate_task_caches(self) -> None:
        """Drop every cached task list and analytics aggregate."""
        removed = self.delete_pattern(f"{TASKS_NAMESPACE}:*")
        removed += self.delete_pattern(f"{ANALYTICS_NAMESPACE}:*")
        logger.debug(f"✨ Task caches invalidated ({removed} keys)")

    def invalidate_user_cache(self, user_id: int) -> None:
        self.delete(user_profile_key(user_id))
        self.delete_pattern(f"{TASKS_NAMESPACE}:list:{user_id}:*")
        logger.debug(f"✨ User cache invalidated: {user_id}")


def task_list_key(principal_id: int, role: str, page: int, limit: int, fingerprint: str) -> str:
    return f"{TASKS_NAMESPACE}:list:{principal_id}:{role}:{page}:{limit}:{fingerprint}"


def analytics_key(kind: str, identifier: Optional[str] = None) -> str:
    if identifier:
        return f"{ANALYTICS_NAMESPACE}:{kind}:{identifier}"
    return f"{ANALYTICS_NAMESPACE}:{kind}"


def user_profile_key(user_id: int) -> str:
    return f"{USER_NAMESPACE}:profile:{user_id}"


def _build_redis_client(url: str):
    client = redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=1,
        socket_timeout=1,
    )
    try:
        client.ping()
        logger.info("✅ Redis cache connected")
    except redis.RedisError as e:
        # Keep the client: individual calls degrade to misses until Redis is back
        logger.warning(f"⚠️  Redis unavailable at startup ({e}), cache reads will miss")
    return client


def build_cache_service() -> CacheService:
    """Create the process-wide cache service from configuration."""
    if config.CACHE_BACKEND == "redis" and config.REDIS_URL:
        return CacheService(_build_redis_client(config.REDIS_URL))
    if config.CACHE_BACKEND == "memory":
        logger.info("Using in-process memory cache")
        return CacheService(MemoryCacheBackend())
    logger.warning("⚠️  No cache backend configured, caching disabled")
    return CacheService(None)


_cache_service: Optional[CacheService] = None


def get_cache() -> CacheService:
    """FastAPI dependency returning the process-wide cache service."""
    global _cache_service
    if _cache_service is None:
        _cache_service = build_cache_service()
    return _cache_service
