from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, List, Optional, TypeVar, Union

from horizonauth.logging import email_digest, get_logger
from horizonauth.service.devices import DeviceInfo, DeviceTracker, DeviceView
from horizonauth.service.errors import (
    AccountDeactivated,
    BadRequestError,
    ConflictError,
    FeatureDisabled,
    InvalidCredentials,
    InvalidTwoFactorCode,
    NotFoundError,
    TokenInvalidOrExpired,
    TokenReused,
    ValidationError,
)
from horizonauth.service.passwords import PasswordHasher
from horizonauth.service.revocation import RevocationCache
from horizonauth.service.tokens import AccessClaims, TokenCodec
from horizonauth.service.two_factor import TwoFactorEngine, TwoFactorSetup, TwoFactorStatus
from horizonauth.storage.common import CredentialStore
from horizonauth.storage.errors import ConstraintViolation
from horizonauth.storage.models import User

if TYPE_CHECKING:
    from horizonauth.service.accounts import AccountManager
    from horizonauth.service.email import EmailDispatcher

logger = get_logger(__name__)

PASSWORD_RESET_TTL = timedelta(hours=1)
PASSWORD_RESET_MESSAGE = "If the email exists, a reset link will be sent"

T = TypeVar("T")


@dataclass(frozen=True)
class SafeUser:
    """User fields that may leave the service: no hashes or one-time tokens."""

    id: str
    email: str
    roles: List[str]
    tenant_id: str
    full_name: Optional[str]
    is_active: bool
    email_verified: bool
    created_at: datetime


def to_safe_user(user: User) -> SafeUser:
    return SafeUser(
        id=user.id,
        email=user.email,
        roles=list(user.roles),
        tenant_id=user.tenant_id,
        full_name=user.full_name,
        is_active=user.is_active,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


@dataclass(frozen=True)
class AuthResult:
    user: SafeUser
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    device_id: Optional[str] = None


@dataclass(frozen=True)
class TwoFactorRequired:
    """Password accepted but a second factor must be presented before tokens issue."""

    user_id: str
    requires_two_factor: bool = True


def _digest(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


async def authenticate_access_token(
    tokens: TokenCodec,
    revocation: RevocationCache,
    access_token: str,
    *,
    now: Optional[datetime] = None,
) -> AccessClaims:
    """Verify an access token; the blacklist is consulted only when it carries a jti.

    Needs no credential store, so sso deployments use it directly.
    """
    if tokens.uses_remote_keys:
        # PyJWKClient fetches the key set over blocking HTTP on a cache miss
        claims = await asyncio.to_thread(tokens.verify_access_token, access_token, now=now)
    else:
        claims = tokens.verify_access_token(access_token, now=now)
    if claims.jti and await revocation.is_blacklisted(claims.jti):
        logger.info("access_token_rejected", reason="blacklisted", user_id=claims.user_id)
        raise TokenInvalidOrExpired()
    return claims


class AuthService:
    """Credential and session lifecycle: the owner of refresh-token rotation.

    Every refresh token belongs to a rotation chain rooted at one login. A
    refresh retires the presented record and inserts its child in a single
    conditional write; presenting a retired or unknown token revokes the
    user's whole session family.

    ``two_factor``, ``devices``, ``accounts`` and ``email`` are optional
    subsystems. Operations that need an absent one raise ``FeatureDisabled``;
    flows that merely use one (device tracking on login) skip it.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenCodec,
        revocation: RevocationCache,
        passwords: PasswordHasher,
        *,
        two_factor: Optional[TwoFactorEngine] = None,
        devices: Optional[DeviceTracker] = None,
        accounts: Optional["AccountManager"] = None,
        email: Optional["EmailDispatcher"] = None,
        default_tenant_id: str = "default",
        password_min_length: int = 8,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.revocation = revocation
        self.passwords = passwords
        self.two_factor = two_factor
        self.devices = devices
        self.accounts = accounts
        self.email = email
        self.default_tenant_id = default_tenant_id
        self.password_min_length = password_min_length
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _require(capability: Optional[T], feature: str) -> T:
        if capability is None:
            raise FeatureDisabled(feature)
        return capability

    def _validate_password(self, password: str) -> None:
        if len(password) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters long",
                detail={"field": "password"},
            )

    # registration / login
    async def register(
        self,
        email: str,
        password: str,
        *,
        full_name: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> AuthResult:
        self._validate_password(password)
        verify_token = secrets.token_urlsafe(32)
        try:
            user = self.store.create_user(
                email,
                self.passwords.hash(password),
                tenant_id=tenant_id or self.default_tenant_id,
                roles=["user"],
                full_name=full_name,
                email_verify_token=verify_token,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "User with this email already exists", detail={"field": "email"}
            ) from exc
        self.logger.info("user_registered", user_id=user.id, tenant_id=user.tenant_id)
        if self.email:
            await self.email.send_email_verification_email(user.email, verify_token)
        return await self.issue_session(user)

    async def login(
        self, email: str, password: str, device_info: Optional[DeviceInfo] = None
    ) -> Union[AuthResult, TwoFactorRequired]:
        user = self.store.get_user_by_email(email)
        if not user or not user.password_hash:
            self.passwords.dummy_verify(password)
            self.logger.info(
                "login_failed", reason="unknown_user", email_hash=email_digest(email)
            )
            raise InvalidCredentials()

        valid, upgraded_hash = self.passwords.verify_and_upgrade(
            password, user.password_hash
        )
        if not valid:
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentials()
        if upgraded_hash:
            self.store.update_password(user.id, upgraded_hash)
            self.logger.info("password_hash_upgraded", user_id=user.id)

        if not user.is_active:
            self.logger.info("login_failed", reason="deactivated", user_id=user.id)
            raise AccountDeactivated(user.deactivation_reason)

        if self.two_factor and self.two_factor.is_enabled(user.id):
            self.logger.info("login_two_factor_required", user_id=user.id)
            return TwoFactorRequired(user_id=user.id)

        return await self.issue_session(user, device_info)

    async def verify_two_factor_login(
        self, user_id: str, code: str, device_info: Optional[DeviceInfo] = None
    ) -> AuthResult:
        two_factor = self._require(self.two_factor, "two_factor")
        user = self.store.get_user(user_id)
        if not user:
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountDeactivated(user.deactivation_reason)

        code = code.strip()
        valid = False
        if len(code) == 6:
            valid = two_factor.verify_totp(user_id, code)
        elif len(code) >= 8:
            valid = two_factor.verify_backup_code(user_id, code)
        if not valid:
            self.logger.info("two_factor_login_failed", user_id=user_id)
            raise InvalidTwoFactorCode()
        return await self.issue_session(user, device_info)

    async def issue_session(
        self, user: User, device_info: Optional[DeviceInfo] = None
    ) -> AuthResult:
        """Start a new rotation chain for ``user``."""
        now = self._now()
        device_id = None
        if self.devices and device_info:
            device_id = self.devices.create_or_update_device(user.id, device_info).id
        pair = self.tokens.issue_pair(user, now=now)
        self.store.create_refresh_token(
            hashed_token=self.tokens.hash_token(pair.refresh_token),
            jti=pair.refresh_jti,
            user_id=user.id,
            expires_at=pair.refresh_expires_at,
            device_id=device_id,
        )
        self.logger.info("session_issued", user_id=user.id, device_id=device_id)
        return AuthResult(
            user=to_safe_user(user),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=TokenCodec.calculate_ttl(pair.access_expires_at, now),
            device_id=device_id,
        )

    # refresh rotation
    async def _reuse_detected(self, user_id: str, reason: str) -> TokenReused:
        self.logger.warning("refresh_token_reuse_detected", user_id=user_id, reason=reason)
        await self.revoke_all_user_tokens(user_id)
        return TokenReused()

    async def refresh(self, raw_token: str) -> AuthResult:
        now = self._now()
        claims = self.tokens.verify_refresh_token(raw_token, now=now)
        blacklisted = await self.revocation.is_blacklisted(claims.jti)
        record = self.store.get_refresh_token_by_hash(self.tokens.hash_token(raw_token))

        if record is None:
            raise await self._reuse_detected(claims.user_id, "unknown_token")
        if record.revoked or record.user_id != claims.user_id:
            raise await self._reuse_detected(claims.user_id, "revoked_token")
        if blacklisted:
            self.logger.info("refresh_rejected", reason="blacklisted", user_id=record.user_id)
            raise TokenInvalidOrExpired()
        if record.expires_at <= now:
            self.logger.info("refresh_rejected", reason="expired", user_id=record.user_id)
            raise TokenInvalidOrExpired("Refresh token expired")

        user = self.store.get_user(record.user_id)
        if not user:
            raise TokenInvalidOrExpired()
        if not user.is_active:
            raise AccountDeactivated(user.deactivation_reason)

        pair = self.tokens.issue_pair(user, now=now)
        child = self.store.rotate_refresh_token(
            record.id,
            hashed_token=self.tokens.hash_token(pair.refresh_token),
            jti=pair.refresh_jti,
            expires_at=pair.refresh_expires_at,
        )
        if child is None:
            # A concurrent refresh rotated this record first
            raise await self._reuse_detected(user.id, "concurrent_rotation")

        await self.revocation.blacklist(
            record.jti, TokenCodec.calculate_ttl(record.expires_at, now)
        )
        if self.devices and record.device_id:
            self.devices.update_last_active(record.device_id)
        self.logger.info(
            "refresh_rotated", user_id=user.id, parent_token_id=record.id, token_id=child.id
        )
        return AuthResult(
            user=to_safe_user(user),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=TokenCodec.calculate_ttl(pair.access_expires_at, now),
            device_id=child.device_id,
        )

    async def authenticate(self, access_token: str) -> AccessClaims:
        return await authenticate_access_token(
            self.tokens, self.revocation, access_token, now=self._now()
        )

    # revocation
    async def logout(self, user_id: str) -> None:
        await self.revoke_all_user_tokens(user_id)
        self.logger.info("user_logged_out", user_id=user_id)

    async def revoke_all_user_tokens(self, user_id: str) -> int:
        """Revoke every live refresh record and blacklist each jti.

        Records with no remaining lifetime are not blacklisted.
        """
        now = self._now()
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        for record in revoked:
            ttl = TokenCodec.calculate_ttl(record.expires_at, now)
            if ttl > 0:
                await self.revocation.blacklist(record.jti, ttl)
        self.logger.info("user_tokens_revoked", user_id=user_id, count=len(revoked))
        return len(revoked)

    # password reset / email verification
    def _generate_reset_token(self, email: str) -> tuple[User, str]:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError(PASSWORD_RESET_MESSAGE)
        raw = secrets.token_urlsafe(32)
        self.store.set_reset_token(user.id, _digest(raw), self._now() + PASSWORD_RESET_TTL)
        return user, raw

    async def request_password_reset(self, email: str) -> str:
        """Always returns the same message whether or not the email exists."""
        try:
            user, token = self._generate_reset_token(email)
        except NotFoundError:
            self.logger.info("password_reset_unknown_email", email_hash=email_digest(email))
            return PASSWORD_RESET_MESSAGE
        if self.email:
            await self.email.send_password_reset_email(user.email, token)
        else:
            self.logger.warning(
                "password_reset_email_unavailable", user_id=user.id, email_hash=email_digest(email)
            )
        self.logger.info("password_reset_requested", user_id=user.id)
        return PASSWORD_RESET_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        self._validate_password(new_password)
        user = self.store.get_user_by_reset_token_hash(_digest(token))
        if (
            not user
            or user.reset_token_expires_at is None
            or user.reset_token_expires_at <= self._now()
        ):
            self.logger.info("password_reset_invalid_token")
            raise BadRequestError("Invalid or expired reset token")
        self.store.update_password(user.id, self.passwords.hash(new_password))
        await self.revoke_all_user_tokens(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    async def verify_email(self, token: str) -> SafeUser:
        user = self.store.get_user_by_verify_token(token)
        if not user:
            raise BadRequestError("Invalid verification token")
        verified = self.store.mark_email_verified(user.id)
        self.logger.info("email_verified", user_id=user.id)
        return to_safe_user(verified or user)

    # two-factor management
    def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        return self._require(self.two_factor, "two_factor").generate_totp_secret(user_id)

    def confirm_two_factor(self, user_id: str, code: str) -> List[str]:
        """Check a code against the pending secret, then enable and return backup codes."""
        two_factor = self._require(self.two_factor, "two_factor")
        if not two_factor.verify_totp_setup(user_id, code):
            raise InvalidTwoFactorCode()
        return two_factor.enable_two_factor(user_id)

    def disable_two_factor(self, user_id: str) -> None:
        self._require(self.two_factor, "two_factor").disable_two_factor(user_id)

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        return self._require(self.two_factor, "two_factor").regenerate_backup_codes(user_id)

    def get_two_factor_status(self, user_id: str) -> TwoFactorStatus:
        return self._require(self.two_factor, "two_factor").get_status(user_id)

    # devices
    def list_devices(
        self, user_id: str, current_device_id: Optional[str] = None
    ) -> List[DeviceView]:
        return self._require(self.devices, "device_management").get_user_devices(
            user_id, current_device_id
        )

    async def revoke_device(self, user_id: str, device_id: str) -> int:
        return await self._require(self.devices, "device_management").revoke_device(
            user_id, device_id
        )

    # account management
    async def deactivate_account(self, user_id: str, reason: Optional[str] = None) -> None:
        await self._require(self.accounts, "account_management").deactivate_account(
            user_id, reason
        )

    def reactivate_account(self, user_id: str) -> None:
        self._require(self.accounts, "account_management").reactivate_account(user_id)

    def delete_account(self, user_id: str) -> None:
        self._require(self.accounts, "account_management").delete_account(user_id)
