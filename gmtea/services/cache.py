"""
Injectable cache with explicit TTLs.

Block timestamps and leaderboard pages go through a CacheBackend handed to
the engine and the query service; nothing is cached at module level.
"""

import json
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...
    
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...
    
    async def delete(self, key: str) -> None: ...
    
    async def clear_prefix(self, prefix: str) -> int: ...


class InMemoryTTLCache:
    """Process-local cache. Entries expire lazily on read."""
    
    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 100_000):
        self._clock = clock
        self._max_entries = max_entries
        self._entries: Dict[str, Tuple[float, Any]] = {}
    
    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value
    
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if len(self._entries) >= self._max_entries:
            self._evict_expired()
        self._entries[key] = (self._clock() + ttl_seconds, value)
    
    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)
    
    async def clear_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)
    
    def _evict_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        # Still full of live entries: drop the oldest half
        if len(self._entries) >= self._max_entries:
            for key in list(self._entries)[: self._max_entries // 2]:
                del self._entries[key]
    
    def __len__(self) -> int:
        return len(self._entries)


class RedisCache:
    """Redis-backed cache storing JSON values. Redis failures read as misses."""
    
    def __init__(self, url: str, prefix: str = "gmtea:"):
        self.url = url
        self.prefix = prefix
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self.logger = logger.bind(service="redis_cache")
    
    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"
    
    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._client.get(self._key(key))
        except redis.RedisError as e:
            self.logger.warning("Cache get failed", key=key, error=str(e))
            return None
        return json.loads(raw) if raw is not None else None
    
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._client.set(self._key(key), json.dumps(value, default=str), ex=ttl_seconds)
        except redis.RedisError as e:
            self.logger.warning("Cache set failed", key=key, error=str(e))
    
    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except redis.RedisError as e:
            self.logger.warning("Cache delete failed", key=key, error=str(e))
    
    async def clear_prefix(self, prefix: str) -> int:
        deleted = 0
        try:
            async for key in self._client.scan_iter(match=f"{self._key(prefix)}*"):
                deleted += await self._client.delete(key)
        except redis.RedisError as e:
            self.logger.warning("Cache prefix clear failed", prefix=prefix, error=str(e))
        return deleted
    
    async def close(self) -> None:
        await self._client.aclose()


def create_cache(backend: str, redis_url: Optional[str] = None, prefix: str = "gmtea:") -> CacheBackend:
    """Build the configured cache backend."""
    if backend == "redis":
        return RedisCache(redis_url, prefix=prefix)
    return InMemoryTTLCache()
