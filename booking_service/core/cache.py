# booking_service/core/cache.py
"""
TTL lookup cache for slow-changing reference data (organization pricing).

The cache is injected where it is used and every write path invalidates the
affected key. Capacity, payment and membership state never go through it.
"""
import json
import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from booking_service.core.config import settings
from booking_service.db.redis import get_redis_client

logger = logging.getLogger(__name__)


class InMemoryTTLBackend:
    """Process-local backend for single-instance deployments and tests."""

    def __init__(self):
        self._store: Dict[str, Tuple[float, str]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[str]:
        now = time.monotonic()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._store[key] = (time.monotonic() + ttl_seconds, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class RedisTTLBackend:
    """Shared backend so invalidation is seen by every API worker."""

    def __init__(self, client: redis.Redis):
        self._client = client

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for {key}, falling back to source: {e}")
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.setex(key, ttl_seconds, value)
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def delete(self, key: str) -> None:
        # A failed delete would leave a stale entry behind until its TTL, so
        # this one is allowed to raise to the writer.
        self._client.delete(key)


class LookupCache:
    """Namespaced read-through cache storing JSON-serializable dicts."""

    def __init__(self, backend, ttl_seconds: int, namespace: str = "lookup"):
        self._backend = backend
        self._ttl = ttl_seconds
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get_or_load(
        self, key: str, loader: Callable[[], Optional[Dict[str, Any]]]
    ) -> Optional[Dict[str, Any]]:
        cached = self._backend.get(self._key(key))
        if cached is not None:
            return json.loads(cached)

        value = loader()
        if value is not None:
            self._backend.set(self._key(key), json.dumps(value, default=str), self._ttl)
        return value

    def invalidate(self, key: str) -> None:
        self._backend.delete(self._key(key))
        logger.debug(f"Invalidated cache key {self._key(key)}")


_lookup_cache: Optional[LookupCache] = None


def get_lookup_cache() -> LookupCache:
    """FastAPI dependency returning the process-wide lookup cache."""
    global _lookup_cache
    if _lookup_cache is None:
        client = get_redis_client()
        backend = RedisTTLBackend(client) if client is not None else InMemoryTTLBackend()
        _lookup_cache = LookupCache(
            backend, ttl_seconds=settings.LOOKUP_CACHE_TTL_SECONDS, namespace="booking"
        )
    return _lookup_cache
