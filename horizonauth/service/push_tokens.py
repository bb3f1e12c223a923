from __future__ import annotations

from typing import List

from horizonauth.logging import get_logger
from horizonauth.service.errors import NotFoundError, ValidationError
from horizonauth.storage.common import CredentialStore
from horizonauth.storage.models import PushToken

logger = get_logger(__name__)

PUSH_TOKEN_TYPES = ("FCM", "APNS")


class PushTokenRegistry:
    """Push notification tokens, at most one active per device and token type."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def register_push_token(
        self, user_id: str, device_id: str, token: str, token_type: str
    ) -> PushToken:
        token_type = token_type.upper()
        if token_type not in PUSH_TOKEN_TYPES:
            raise ValidationError(
                "unsupported push token type", detail={"token_type": token_type}
            )
        device = self.store.get_device(device_id)
        if not device or device.user_id != user_id:
            raise NotFoundError("Device not found", detail={"device_id": device_id})

        existing = self.store.get_push_token_by_value(token)
        if existing:
            # Same token value moved between devices or accounts
            updated = self.store.update_push_token(
                existing.id, user_id=user_id, device_id=device_id, active=True
            )
            logger.info("push_token_reactivated", user_id=user_id, device_id=device_id)
            return updated

        self.store.deactivate_device_push_tokens(device_id, token_type)
        created = self.store.create_push_token(user_id, device_id, token, token_type)
        logger.info(
            "push_token_registered",
            user_id=user_id,
            device_id=device_id,
            token_type=token_type,
        )
        return created

    def update_push_token(self, token_id: str, new_token: str) -> PushToken:
        updated = self.store.update_push_token(token_id, token=new_token, active=True)
        if not updated:
            raise NotFoundError("Push token not found", detail={"token_id": token_id})
        return updated

    def revoke_push_token(self, token_id: str) -> None:
        if not self.store.update_push_token(token_id, active=False):
            raise NotFoundError("Push token not found", detail={"token_id": token_id})

    def revoke_device_push_tokens(self, device_id: str) -> int:
        count = self.store.deactivate_device_push_tokens(device_id)
        if count:
            logger.info("device_push_tokens_revoked", device_id=device_id, count=count)
        return count

    def get_user_push_tokens(self, user_id: str) -> List[PushToken]:
        return sorted(
            self.store.list_push_tokens(user_id, active_only=True),
            key=lambda p: p.created_at,
            reverse=True,
        )

    def get_active_tokens_for_user(self, user_id: str) -> List[str]:
        return [p.token for p in self.store.list_push_tokens(user_id, active_only=True)]
