from __future__ import annotations

import base64
import io
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import bcrypt
import pyotp
import qrcode
import qrcode.image.svg

from horizonauth.logging import get_logger
from horizonauth.service.errors import (
    BackupCodeAlreadyUsed,
    BadRequestError,
    NotFoundError,
)
from horizonauth.storage.common import CredentialStore

logger = get_logger(__name__)

# Excludes 0/O and 1/I to avoid transcription errors
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    qr_code: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    enabled_at: Optional[datetime] = None
    backup_codes_remaining: int = 0


def generate_backup_code() -> str:
    raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
    return f"{raw[:4]}-{raw[4:]}"


def normalize_backup_code(code: str) -> str:
    """Canonical ``XXXX-XXXX`` form: upper-cased, separators and spaces ignored."""
    compact = "".join(ch for ch in code.upper() if ch not in "- ")
    if len(compact) != BACKUP_CODE_LENGTH:
        return compact
    return f"{compact[:4]}-{compact[4:]}"


def render_qr_data_url(payload: str) -> str:
    image = qrcode.make(payload, image_factory=qrcode.image.svg.SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


class TwoFactorEngine:
    """TOTP enrolment and backup codes.

    Lifecycle: ``generate_totp_secret`` stores a disabled secret,
    ``verify_totp_setup`` proves the authenticator works, and
    ``enable_two_factor`` flips the flag and hands out the backup codes once.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        issuer: str = "HorizonAuth",
        backup_code_rounds: int = 10,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.backup_code_rounds = backup_code_rounds

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _hash_backup_code(self, code: str) -> str:
        salt = bcrypt.gensalt(rounds=self.backup_code_rounds)
        return bcrypt.hashpw(code.encode("utf-8"), salt).decode("utf-8")

    def _new_backup_codes(self) -> tuple[List[str], List[str]]:
        codes = [generate_backup_code() for _ in range(BACKUP_CODE_COUNT)]
        return codes, [self._hash_backup_code(code) for code in codes]

    def generate_totp_secret(
        self, user_id: str, issuer: Optional[str] = None
    ) -> TwoFactorSetup:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        existing = self.store.get_two_factor(user_id)
        if existing and existing.enabled:
            raise BadRequestError("Two-factor authentication is already enabled")
        secret = pyotp.random_base32()
        otpauth_url = pyotp.TOTP(secret).provisioning_uri(
            name=user.email, issuer_name=issuer or self.issuer
        )
        self.store.save_two_factor_secret(user_id, secret)
        logger.info("two_factor_setup_started", user_id=user_id)
        return TwoFactorSetup(
            secret=secret, otpauth_url=otpauth_url, qr_code=render_qr_data_url(otpauth_url)
        )

    @staticmethod
    def _totp_matches(secret: str, code: str) -> bool:
        if not code or not code.isdigit():
            return False
        # One step either side for clock skew
        return pyotp.TOTP(secret).verify(code, valid_window=1)

    def verify_totp_setup(self, user_id: str, code: str) -> bool:
        """Check ``code`` against the pending secret without enabling anything."""
        record = self.store.get_two_factor(user_id)
        if not record or record.enabled:
            return False
        return self._totp_matches(record.secret, code)

    def verify_totp(self, user_id: str, code: str) -> bool:
        record = self.store.get_two_factor(user_id)
        if not record or not record.enabled:
            return False
        return self._totp_matches(record.secret, code)

    def enable_two_factor(self, user_id: str) -> List[str]:
        """Enable 2FA; returns the plaintext backup codes, which are never stored."""
        record = self.store.get_two_factor(user_id)
        if not record:
            raise BadRequestError("Two-factor setup has not been started")
        if record.enabled:
            raise BadRequestError("Two-factor authentication is already enabled")
        codes, hashes = self._new_backup_codes()
        if not self.store.enable_two_factor(user_id, hashes, self._now()):
            # Enabled by a concurrent request, or disabled in between
            logger.warning("two_factor_enable_race_lost", user_id=user_id)
            raise BadRequestError("Two-factor authentication is already enabled")
        logger.info("two_factor_enabled", user_id=user_id)
        return codes

    def disable_two_factor(self, user_id: str) -> None:
        if not self.store.disable_two_factor(user_id):
            raise NotFoundError("Two-factor authentication is not configured")
        logger.info("two_factor_disabled", user_id=user_id)

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        record = self.store.get_two_factor(user_id)
        if not record or not record.enabled:
            raise BadRequestError("Two-factor authentication is not enabled")
        codes, hashes = self._new_backup_codes()
        self.store.replace_backup_codes(user_id, hashes)
        logger.info("backup_codes_regenerated", user_id=user_id)
        return codes

    def verify_backup_code(self, user_id: str, code: str) -> bool:
        """Consume a matching unused backup code.

        Returns ``False`` when nothing matches. Raises ``BackupCodeAlreadyUsed``
        when the code matched but a concurrent request consumed it first.
        """
        candidate = normalize_backup_code(code).encode("utf-8")
        for backup in self.store.list_unused_backup_codes(user_id):
            if not bcrypt.checkpw(candidate, backup.code_hash.encode("utf-8")):
                continue
            if self.store.consume_backup_code(backup.id, self._now()):
                logger.info("backup_code_consumed", user_id=user_id)
                return True
            logger.warning("backup_code_race_lost", user_id=user_id)
            raise BackupCodeAlreadyUsed()
        return False

    def is_enabled(self, user_id: str) -> bool:
        record = self.store.get_two_factor(user_id)
        return bool(record and record.enabled)

    def get_status(self, user_id: str) -> TwoFactorStatus:
        record = self.store.get_two_factor(user_id)
        if not record or not record.enabled:
            return TwoFactorStatus(enabled=False)
        return TwoFactorStatus(
            enabled=True,
            enabled_at=record.enabled_at,
            backup_codes_remaining=len(self.store.list_unused_backup_codes(user_id)),
        )
