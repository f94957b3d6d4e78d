"""Key/value cache for live device status and memoised query results."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from ..models import utcnow

logger = logging.getLogger(__name__)

STATUS_TTL = 60
METER_TTL = 30
HEARTBEAT_TTL = 600

def status_key(device_id: str) -> str:
    return f"status:{device_id}"

def meter_key(device_id: str) -> str:
    return f"meter:{device_id}"

def heartbeat_key(device_id: str) -> str:
    return f"heartbeat:{device_id}"

def list_prefix(entity: str) -> str:
    return f"{entity}:list:"

def list_key(entity: str, **filters: Any) -> str:
    """Composite key for a list query, stable under filter ordering."""
    parts = ";".join(f"{k}={'' if v is None else v}" for k, v in sorted(filters.items()))
    return f"{list_prefix(entity)}{parts}"


class Cache(ABC):
    """JSON document cache with optional per-key TTL (seconds)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def close(self) -> None:
        return None

    async def cached(self, key: str, ttl: int, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key`` or compute, store and return it."""
        hit = await self.get(key)
        if hit is not None:
            return hit
        value = await loader()
        await self.set(key, value, ttl)
        return value

    async def invalidate_lists(self, *entities: str) -> None:
        for entity in entities:
            removed = await self.delete_prefix(list_prefix(entity))
            if removed:
                logger.debug("Invalidated %d cached %s listings", removed, entity)

    async def update_live_status(
        self,
        device_id: str,
        status: str,
        error_code: Optional[str] = None,
        ttl: int = STATUS_TTL,
    ) -> None:
        snapshot: Dict[str, Any] = {"status": status, "timestamp": utcnow().isoformat()}
        if error_code:
            snapshot["errorCode"] = error_code
        await self.set(status_key(device_id), snapshot, ttl)

    async def live_status(self, device_id: str) -> Optional[Dict[str, Any]]:
        snapshot = await self.get(status_key(device_id))
        return snapshot if isinstance(snapshot, dict) else None

class MemoryCache(Cache):
    """In-process cache used when no Redis URL is configured."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def _alive(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return raw

    async def get(self, key: str) -> Optional[Any]:
        raw = self._alive(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (json.dumps(value, default=str), expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for k in keys:
            del self._data[k]
        return len(keys)

class RedisCache(Cache):
    """Redis-backed cache. Every Redis failure degrades to a miss or a no-op."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            logger.warning("Cache get %s failed: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self._client.set(key, json.dumps(value, default=str), ex=ttl or None)
        except RedisError as exc:
            logger.warning("Cache set %s failed: %s", key, exc)

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            logger.warning("Cache delete %s failed: %s", key, exc)

    async def delete_prefix(self, prefix: str) -> int:
        removed = 0
        try:
            async for key in self._client.scan_iter(match=f"{prefix}*", count=200):
                removed += await self._client.delete(key)
        except RedisError as exc:
            logger.warning("Cache prefix delete %s failed: %s", prefix, exc)
        return removed

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as exc:
            logger.warning("Closing Redis connection failed: %s", exc)

def create_cache(redis_url: str) -> Cache:
    if not redis_url:
        logger.info("REDIS_URL not set; using in-process cache")
        return MemoryCache()
    return RedisCache.from_url(redis_url)

__all__ = [
    "Cache",
    "MemoryCache",
    "RedisCache",
    "create_cache",
    "status_key",
    "meter_key",
    "heartbeat_key",
    "list_key",
    "list_prefix",
]
