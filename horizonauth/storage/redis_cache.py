from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis


class TTLCache(Protocol):
    """Expiring key-value store consumed by the revocation cache."""

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...


class RedisCache:
    """Thin async Redis wrapper for expiring keys."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        # Redis rejects non-positive expiries
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def delete(self, key: str) -> None:
        self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def close(self) -> None:
        self.client.close()


class MemoryCache:
    """In-process TTL cache used when Redis is unavailable in test or dev mode.

    Entries are evicted lazily on read.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
