from __future__ import annotations

from horizonauth.logging import get_logger
from horizonauth.storage.redis_cache import TTLCache

logger = get_logger(__name__)

BLACKLIST_PREFIX = "auth:blacklist:"


class RevocationCache:
    """Token blacklist on top of a shared expiring key-value store.

    Reads fail closed: if the cache cannot be reached the token is treated
    as blacklisted. Writes are best effort because the durable revoked flag
    on the refresh record stays authoritative.
    """

    def __init__(self, cache: TTLCache, *, prefix: str = BLACKLIST_PREFIX) -> None:
        self.cache = cache
        self.prefix = prefix

    def _key(self, token_id: str) -> str:
        return f"{self.prefix}{token_id}"

    async def blacklist(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.cache.set_with_expiry(self._key(token_id), "1", ttl_seconds)
        except Exception as exc:
            logger.warning("token_blacklist_write_failed", jti=token_id, error=str(exc))

    async def is_blacklisted(self, token_id: str) -> bool:
        try:
            return await self.cache.exists(self._key(token_id))
        except Exception as exc:
            # SECURITY: Default to revoked when cache is unavailable to prevent
            # accepting potentially revoked tokens during Redis outages.
            logger.warning(
                "token_blacklist_check_failed_defaulting_to_revoked",
                jti=token_id,
                error=str(exc),
            )
            return True

    async def unblacklist(self, token_id: str) -> None:
        try:
            await self.cache.delete(self._key(token_id))
        except Exception as exc:
            logger.warning("token_unblacklist_failed", jti=token_id, error=str(exc))
