from __future__ import annotations

import secrets
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from horizonauth.logging import get_logger
from horizonauth.storage.common import (
    SecretCipher,
    new_id,
    normalize_email,
    utcnow,
)
from horizonauth.storage.errors import ConstraintViolation
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


class MemoryStore:
    """Thread-safe in-process credential store for tests and local development.

    Nothing is persisted; a restart drops every user and session.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.devices: Dict[str, Device] = {}
        self.two_factor: Dict[str, TwoFactorAuth] = {}
        self.backup_codes: Dict[str, BackupCode] = {}
        self.social_accounts: Dict[str, SocialAccount] = {}
        self.oauth_clients: Dict[str, OAuthClient] = {}
        self.authorization_codes: Dict[str, AuthorizationCode] = {}
        self.push_tokens: Dict[str, PushToken] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key or secrets.token_urlsafe(32))

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
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                roles=list(roles or ["user"]),
                tenant_id=tenant_id,
                full_name=full_name,
                email_verify_token=email_verify_token,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_verify_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email_verify_token == token), None
            )

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.reset_token_hash == token_hash),
                None,
            )

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.reset_token_hash = None
            user.reset_token_expires_at = None
            user.updated_at = utcnow()
            return user

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.reset_token_hash = token_hash
            user.reset_token_expires_at = expires_at
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.email_verify_token = None
            return user

    def set_user_active(
        self, user_id: str, active: bool, reason: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            user.deactivation_reason = None if active else reason
            user.updated_at = utcnow()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.two_factor.pop(user_id, None)
            for table in (
                self.refresh_tokens,
                self.devices,
                self.backup_codes,
                self.social_accounts,
                self.push_tokens,
            ):
                for key, row in list(table.items()):
                    if row.user_id == user_id:
                        table.pop(key, None)
            for code, row in list(self.authorization_codes.items()):
                if row.user_id == user_id:
                    self.authorization_codes.pop(code, None)
            return True

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
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "refresh token user missing", {"user_id": user_id}
                )
            if any(r.hashed_token == hashed_token for r in self.refresh_tokens.values()):
                raise ConstraintViolation(
                    "refresh token already stored", {"field": "hashed_token"}
                )
            record = RefreshTokenRecord(
                id=new_id(),
                hashed_token=hashed_token,
                jti=jti,
                user_id=user_id,
                expires_at=expires_at,
                device_id=device_id,
                parent_token_id=parent_token_id,
            )
            self.refresh_tokens[record.id] = record
            return record

    def get_refresh_token_by_hash(
        self, hashed_token: str
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return next(
                (r for r in self.refresh_tokens.values() if r.hashed_token == hashed_token),
                None,
            )

    def rotate_refresh_token(
        self,
        old_token_id: str,
        *,
        hashed_token: str,
        jti: str,
        expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]:
        """Revoke ``old_token_id`` and insert its child in one step.

        Returns ``None`` when the old record was already revoked, meaning a
        concurrent caller rotated it first.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if old is None or old.revoked:
                return None
            old.revoked = True
            return self.create_refresh_token(
                hashed_token=hashed_token,
                jti=jti,
                user_id=old.user_id,
                expires_at=expires_at,
                device_id=old.device_id,
                parent_token_id=old.id,
            )

    def revoke_user_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return self._revoke_where(lambda r: r.user_id == user_id)

    def revoke_device_refresh_tokens(self, device_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return self._revoke_where(lambda r: r.device_id == device_id)

    def _revoke_where(self, predicate) -> List[RefreshTokenRecord]:
        revoked: List[RefreshTokenRecord] = []
        for record in self.refresh_tokens.values():
            if not record.revoked and predicate(record):
                record.revoked = True
                revoked.append(replace(record))
        return revoked

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
    ) -> Device:
        with self._data_lock:
            existing = self.get_device_by_fingerprint(user_id, fingerprint)
            if existing:
                existing.last_active = now
                if name:
                    existing.name = name
                return existing
            device = Device(
                id=new_id(),
                user_id=user_id,
                fingerprint=fingerprint,
                name=name,
                os=os,
                browser=browser,
                device_type=device_type,
                last_active=now,
                created_at=now,
            )
            self.devices[device.id] = device
            return device

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            return self.devices.get(device_id)

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[Device]:
        with self._data_lock:
            return next(
                (
                    d
                    for d in self.devices.values()
                    if d.user_id == user_id and d.fingerprint == fingerprint
                ),
                None,
            )

    def touch_device(self, device_id: str, now: datetime) -> None:
        with self._data_lock:
            device = self.devices.get(device_id)
            if device:
                device.last_active = now

    def list_active_devices(self, user_id: str, now: datetime) -> List[Device]:
        with self._data_lock:
            live_device_ids = {
                r.device_id
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.device_id and r.is_live(now)
            }
            devices = [
                d
                for d in self.devices.values()
                if d.user_id == user_id and d.id in live_device_ids
            ]
            return sorted(devices, key=lambda d: d.last_active, reverse=True)

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record:
                return None
            return replace(record, secret=self._cipher.decrypt(record.secret))

    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorAuth:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = TwoFactorAuth(
                user_id=user_id, secret=self._cipher.encrypt(secret), enabled=False
            )
            self.two_factor[user_id] = record
            return replace(record, secret=secret)

    def enable_two_factor(
        self, user_id: str, code_hashes: Sequence[str], now: datetime
    ) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or record.enabled:
                return False
            self.replace_backup_codes(user_id, code_hashes)
            record.enabled = True
            record.enabled_at = now
            return True

    def disable_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(user_id, None) is not None
            self._drop_backup_codes(user_id)
            return removed

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        with self._data_lock:
            self._drop_backup_codes(user_id)
            for code_hash in code_hashes:
                code = BackupCode(id=new_id(), user_id=user_id, code_hash=code_hash)
                self.backup_codes[code.id] = code

    def _drop_backup_codes(self, user_id: str) -> None:
        for code_id, code in list(self.backup_codes.items()):
            if code.user_id == user_id:
                self.backup_codes.pop(code_id, None)

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._data_lock:
            return [
                replace(c)
                for c in self.backup_codes.values()
                if c.user_id == user_id and not c.used
            ]

    def consume_backup_code(self, code_id: str, now: datetime) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if code is None or code.used:
                return False
            code.used = True
            code.used_at = now
            return True

    # social accounts
    def get_social_account(
        self, provider: str, provider_id: str
    ) -> Optional[SocialAccount]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.social_accounts.values()
                    if a.provider == provider and a.provider_id == provider_id
                ),
                None,
            )

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
    ) -> SocialAccount:
        with self._data_lock:
            if self.get_social_account(provider, provider_id):
                raise ConstraintViolation(
                    "social account already linked",
                    {"provider": provider, "field": "provider_id"},
                )
            if user_id not in self.users:
                raise ConstraintViolation(
                    "social account user missing", {"user_id": user_id}
                )
            account = SocialAccount(
                id=new_id(),
                user_id=user_id,
                provider=provider,
                provider_id=provider_id,
                email=email,
                name=name,
                avatar=avatar,
                profile_data=profile_data,
            )
            self.social_accounts[account.id] = account
            return account

    def update_social_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        profile_data: Optional[dict] = None,
    ) -> Optional[SocialAccount]:
        with self._data_lock:
            account = self.social_accounts.get(account_id)
            if not account:
                return None
            account.email = email
            account.name = name
            account.avatar = avatar
            account.profile_data = profile_data
            account.updated_at = utcnow()
            return account

    def list_social_accounts(self, user_id: str) -> List[SocialAccount]:
        with self._data_lock:
            return [a for a in self.social_accounts.values() if a.user_id == user_id]

    # oauth
    def upsert_oauth_client(
        self, client_id: str, redirect_uris: Sequence[str], name: Optional[str] = None
    ) -> OAuthClient:
        with self._data_lock:
            client = OAuthClient(id=client_id, redirect_uris=list(redirect_uris), name=name)
            self.oauth_clients[client_id] = client
            return client

    def get_oauth_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            return self.oauth_clients.get(client_id)

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
    ) -> AuthorizationCode:
        with self._data_lock:
            if code in self.authorization_codes:
                raise ConstraintViolation("authorization code exists", {"field": "code"})
            record = AuthorizationCode(
                code=code,
                user_id=user_id,
                client_id=client_id,
                redirect_uri=redirect_uri,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
                expires_at=expires_at,
            )
            self.authorization_codes[code] = record
            return replace(record)

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            record = self.authorization_codes.get(code)
            return replace(record) if record else None

    def mark_authorization_code_used(self, code: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.authorization_codes.get(code)
            if record is None or record.used_at is not None:
                return False
            record.used_at = now
            return True

    # push tokens
    def create_push_token(
        self, user_id: str, device_id: str, token: str, token_type: str
    ) -> PushToken:
        with self._data_lock:
            if self.get_push_token_by_value(token):
                raise ConstraintViolation("push token exists", {"field": "token"})
            record = PushToken(
                id=new_id(),
                user_id=user_id,
                device_id=device_id,
                token=token,
                token_type=token_type,
            )
            self.push_tokens[record.id] = record
            return record

    def get_push_token(self, token_id: str) -> Optional[PushToken]:
        with self._data_lock:
            return self.push_tokens.get(token_id)

    def get_push_token_by_value(self, token: str) -> Optional[PushToken]:
        with self._data_lock:
            return next((p for p in self.push_tokens.values() if p.token == token), None)

    def update_push_token(
        self,
        token_id: str,
        *,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Optional[PushToken]:
        with self._data_lock:
            record = self.push_tokens.get(token_id)
            if not record:
                return None
            if token is not None:
                record.token = token
            if user_id is not None:
                record.user_id = user_id
            if device_id is not None:
                record.device_id = device_id
            if active is not None:
                record.active = active
            record.updated_at = utcnow()
            return record

    def deactivate_device_push_tokens(
        self, device_id: str, token_type: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for record in self.push_tokens.values():
                if record.device_id != device_id or not record.active:
                    continue
                if token_type and record.token_type != token_type:
                    continue
                record.active = False
                record.updated_at = utcnow()
                count += 1
            return count

    def list_push_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[PushToken]:
        with self._data_lock:
            return [
                p
                for p in self.push_tokens.values()
                if p.user_id == user_id and (p.active or not active_only)
            ]
