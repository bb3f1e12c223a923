"""Common storage utilities shared between memory and postgres implementations.

``CredentialStore`` is the contract the services depend on. Every method that
must be safe under concurrent callers (token rotation, backup-code and
authorization-code consumption) is a conditional write that reports whether
this caller won.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

from cryptography.fernet import Fernet, InvalidToken

from horizonauth.storage.models import (
    AuthorizationCode,
    BackupCode,
    Device,
    OAuthClient,
    PushToken,
    RefreshTokenRecord,
    SocialAccount,
    TwoFactorAuth,
    User,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps coming back from a driver as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CredentialStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        tenant_id: str,
        roles: Optional[List[str]] = None,
        full_name: Optional[str] = None,
        email_verify_token: Optional[str] = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_verify_token(self, token: str) -> Optional[User]: ...

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def set_user_active(
        self, user_id: str, active: bool, reason: Optional[str] = None
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # refresh tokens
    def create_refresh_token(
        self,
        *,
        hashed_token: str,
        jti: str,
        user_id: str,
        expires_at: datetime,
        device_id: Optional[str] = None,
        parent_token_id: Optional[str] = None,
    ) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(
        self, hashed_token: str
    ) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self,
        old_token_id: str,
        *,
        hashed_token: str,
        jti: str,
        expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...

    def revoke_device_refresh_tokens(
        self, device_id: str
    ) -> List[RefreshTokenRecord]: ...

    # devices
    def upsert_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        name: Optional[str],
        os: Optional[str],
        browser: Optional[str],
        device_type: str,
        now: datetime,
    ) -> Device: ...

    def get_device(self, device_id: str) -> Optional[Device]: ...

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[Device]: ...

    def touch_device(self, device_id: str, now: datetime) -> None: ...

    def list_active_devices(self, user_id: str, now: datetime) -> List[Device]: ...

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]: ...

    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorAuth: ...

    def enable_two_factor(
        self, user_id: str, code_hashes: Sequence[str], now: datetime
    ) -> bool: ...

    def disable_two_factor(self, user_id: str) -> bool: ...

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None: ...

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]: ...

    def consume_backup_code(self, code_id: str, now: datetime) -> bool: ...

    # social accounts
    def get_social_account(
        self, provider: str, provider_id: str
    ) -> Optional[SocialAccount]: ...

    def create_social_account(
        self,
        user_id: str,
        provider: str,
        provider_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        profile_data: Optional[dict] = None,
    ) -> SocialAccount: ...

    def update_social_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        profile_data: Optional[dict] = None,
    ) -> Optional[SocialAccount]: ...

    def list_social_accounts(self, user_id: str) -> List[SocialAccount]: ...

    # oauth
    def upsert_oauth_client(
        self, client_id: str, redirect_uris: Sequence[str], name: Optional[str] = None
    ) -> OAuthClient: ...

    def get_oauth_client(self, client_id: str) -> Optional[OAuthClient]: ...

    def create_authorization_code(
        self,
        code: str,
        *,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        expires_at: datetime,
    ) -> AuthorizationCode: ...

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]: ...

    def mark_authorization_code_used(self, code: str, now: datetime) -> bool: ...

    # push tokens
    def create_push_token(
        self, user_id: str, device_id: str, token: str, token_type: str
    ) -> PushToken: ...

    def get_push_token(self, token_id: str) -> Optional[PushToken]: ...

    def get_push_token_by_value(self, token: str) -> Optional[PushToken]: ...

    def update_push_token(
        self,
        token_id: str,
        *,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Optional[PushToken]: ...

    def deactivate_device_push_tokens(
        self, device_id: str, token_type: Optional[str] = None
    ) -> int: ...

    def list_push_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[PushToken]: ...


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret cipher requires key material")
        self._fernet = Fernet(_derive_cipher_key(key_material))

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("stored two-factor secret cannot be decrypted") from exc
