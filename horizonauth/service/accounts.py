from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from horizonauth.logging import email_digest, get_logger
from horizonauth.service.errors import NotFoundError
from horizonauth.service.revocation import RevocationCache
from horizonauth.service.tokens import TokenCodec
from horizonauth.storage.common import CredentialStore

logger = get_logger(__name__)


class AccountManager:
    def __init__(
        self, store: CredentialStore, *, revocation: Optional[RevocationCache] = None
    ) -> None:
        self.store = store
        self.revocation = revocation

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def deactivate_account(self, user_id: str, reason: Optional[str] = None) -> None:
        """Kill every session and mark the account inactive."""
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        if self.revocation:
            now = self._now()
            for record in revoked:
                ttl = TokenCodec.calculate_ttl(record.expires_at, now)
                if ttl > 0:
                    await self.revocation.blacklist(record.jti, ttl)
        self.store.set_user_active(user_id, False, reason)
        logger.info(
            "account_deactivated", user_id=user_id, sessions_revoked=len(revoked)
        )

    def reactivate_account(self, user_id: str) -> None:
        if not self.store.set_user_active(user_id, True):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("account_reactivated", user_id=user_id)

    def reactivate_account_by_email(self, email: str) -> str:
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("account_reactivation_unknown_email", email_hash=email_digest(email))
            raise NotFoundError("user not found")
        self.reactivate_account(user.id)
        return user.id

    def delete_account(self, user_id: str) -> None:
        """Hard delete; owned records cascade."""
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("account_deleted", user_id=user_id)

    def is_account_active(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        return bool(user and user.is_active)
