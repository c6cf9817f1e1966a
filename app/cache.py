"""
Cache backends for short-lived shared state
Redis in production, an in-process TTL map for single-instance runs and tests.
The active backend is built once at startup and injected through ``get_cache``.
"""
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis
from fastapi import Request

from .config import CACHE_BACKEND

logger = logging.getLogger(__name__)


def get_redis_client() -> redis.Redis:
    """
    Create a Redis client
    Supports both standard Redis and Upstash managed Redis
    """
    redis_url = os.getenv("REDIS_URL")

    if redis_url:
        # Mask password in URL for logging
        if "@" in redis_url:
            url_parts = redis_url.split("@")
            protocol = url_parts[0].split(":")[0]
            masked_url = f"{protocol}:****@{url_parts[1]}"
        else:
            masked_url = "****"
        logger.info(f"📡 Using Redis URL connection: {masked_url}")

        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=15,
            socket_timeout=30,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=20,
        )
    else:
        redis_host = os.getenv("REDIS_HOST", "localhost")
        redis_port = int(os.getenv("REDIS_PORT", "6379"))
        redis_password = os.getenv("REDIS_PASSWORD", None)
        redis_db = int(os.getenv("REDIS_DB", "0"))
        redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"

        logger.info(f"📡 Using Redis at {redis_host}:{redis_port} (db={redis_db}, ssl={redis_ssl})")

        client = redis.Redis(
            host=redis_host,
            port=redis_port,
            password=redis_password,
            db=redis_db,
            ssl=redis_ssl,
            decode_responses=True,
            socket_connect_timeout=15,
            socket_timeout=30,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=20,
        )

    # Test connection
    client.ping()
    logger.info("Redis connected successfully")
    return client


class CacheBackend(ABC):
    """Key/value cache with per-entry TTL"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        ...

    @abstractmethod
    def pop(self, key: str) -> Optional[Any]:
        """Read and remove a value in one step"""


class RedisCache(CacheBackend):
    """Redis cache wrapper with automatic JSON serialization"""

    def __init__(self, client: redis.Redis):
        self.redis_client = client

    def get(self, key: str) -> Optional[Any]:
        try:
            value = self.redis_client.get(key)
            if value:
                logger.debug(f"✅ Cache HIT: {key}")
                return json.loads(value)
            logger.debug(f"❌ Cache MISS: {key}")
            return None
        except redis.RedisError as e:
            logger.error(f"❌ Cache get error for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            self.redis_client.setex(key, ttl, json.dumps(value))
            logger.debug(f"✅ Cache SET: {key} (TTL: {ttl}s)")
            return True
        except redis.RedisError as e:
            logger.error(f"❌ Cache set error for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            self.redis_client.delete(key)
            logger.debug(f"✅ Cache DELETE: {key}")
            return True
        except redis.RedisError as e:
            logger.error(f"❌ Cache delete error for {key}: {e}")
            return False

    def pop(self, key: str) -> Optional[Any]:
        """Atomic read-and-delete, so a value is handed out at most once"""
        try:
            value = self.redis_client.getdel(key)
            return json.loads(value) if value else None
        except redis.RedisError as e:
            logger.error(f"❌ Cache pop error for {key}: {e}")
            return None

    def delete_prefix(self, prefix: str) -> int:
        try:
            keys = list(self.redis_client.scan_iter(match=f"{prefix}*"))
            if keys:
                deleted = self.redis_client.delete(*keys)
                logger.debug(f"✅ Cache DELETE prefix: {prefix} ({deleted} keys)")
                return deleted
            return 0
        except redis.RedisError as e:
            logger.error(f"❌ Cache delete prefix error for {prefix}: {e}")
            return 0


class MemoryCache(CacheBackend):
    """Process-local cache. Entries expire lazily on read."""

    def __init__(self, clock=time.monotonic):
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
        return json.loads(payload)

    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        with self._lock:
            now = self._clock()
            expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
            for k in expired:
                del self._entries[k]
            self._entries[key] = (now + ttl, json.dumps(value))
        return True

    def pop(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None or self._clock() >= entry[0]:
                return None
        return json.loads(entry[1])

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
        return len(keys)


def build_cache(backend: str = CACHE_BACKEND) -> CacheBackend:
    """Build the configured cache, falling back to memory when Redis is unreachable"""
    if backend == "redis":
        try:
            return RedisCache(get_redis_client())
        except (redis.RedisError, OSError) as e:
            logger.warning(f"⚠️ Redis cache unavailable, using in-process cache: {e}")
    return MemoryCache()


def get_cache(request: Request) -> CacheBackend:
    """Dependency returning the cache built during application startup"""
    return request.app.state.cache
