"""Tests for the token blacklist and the in-memory TTL cache behind it."""

from horizonauth.service.revocation import BLACKLIST_PREFIX, RevocationCache
from horizonauth.storage.redis_cache import MemoryCache


class FakeClock:
    def __init__(self, start=1000.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


class BrokenCache:
    """Cache whose every operation fails, like an unreachable Redis."""

    async def set_with_expiry(self, key, value, ttl_seconds):
        raise ConnectionError("redis down")

    async def get(self, key):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")

    async def exists(self, key):
        raise ConnectionError("redis down")


class TestMemoryCache:
    async def test_entries_expire(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)

        await cache.set_with_expiry("k", "v", 10)
        assert await cache.get("k") == "v"

        clock.advance(9)
        assert await cache.exists("k") is True
        clock.advance(1)
        assert await cache.exists("k") is False
        assert await cache.get("k") is None

    async def test_delete(self):
        cache = MemoryCache()
        await cache.set_with_expiry("k", "v", 60)

        await cache.delete("k")

        assert await cache.get("k") is None


class TestRevocationCache:
    async def test_blacklist_uses_namespaced_key(self, cache, revocation):
        await revocation.blacklist("jti-1", 60)

        assert await cache.get(f"{BLACKLIST_PREFIX}jti-1") == "1"
        assert await revocation.is_blacklisted("jti-1") is True
        assert await revocation.is_blacklisted("jti-2") is False

    async def test_non_positive_ttl_is_skipped(self, cache, revocation):
        await revocation.blacklist("jti-dead", 0)
        await revocation.blacklist("jti-negative", -5)

        assert await revocation.is_blacklisted("jti-dead") is False
        assert await revocation.is_blacklisted("jti-negative") is False

    async def test_custom_prefix(self, cache):
        revocation = RevocationCache(cache, prefix="tenant-a:bl:")

        await revocation.blacklist("jti-1", 60)

        assert await cache.exists("tenant-a:bl:jti-1") is True

    async def test_unblacklist(self, revocation):
        await revocation.blacklist("jti-1", 60)

        await revocation.unblacklist("jti-1")

        assert await revocation.is_blacklisted("jti-1") is False

    async def test_reads_fail_closed(self):
        revocation = RevocationCache(BrokenCache())

        assert await revocation.is_blacklisted("any") is True

    async def test_writes_are_best_effort(self):
        revocation = RevocationCache(BrokenCache())

        await revocation.blacklist("jti-1", 60)
        await revocation.unblacklist("jti-1")
