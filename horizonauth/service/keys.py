from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from horizonauth.config import Settings
from horizonauth.logging import get_logger

logger = get_logger(__name__)

_PRIVATE_KEY_FILE = "jwt_private.pem"
_PUBLIC_KEY_FILE = "jwt_public.pem"
_MFA_KEY_FILE = ".mfa_secret"


@dataclass(frozen=True)
class SigningKeys:
    """RSA key material loaded once at startup.

    ``private_pem`` is absent on verify-only (sso) deployments.
    """

    public_pem: str
    kid: str
    private_pem: Optional[str] = None

    @property
    def can_sign(self) -> bool:
        return self.private_pem is not None


def generate_key_pair(bits: int = 2048) -> Tuple[str, str]:
    """Return a fresh ``(private_pem, public_pem)`` RSA pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def public_pem_from_private(private_pem: str) -> str:
    private_key = serialization.load_pem_private_key(private_pem.encode(), password=None)
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def _atomic_write(path: Path, data: str) -> None:
    # Write to a temp file with restrictive permissions, then rename
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, data.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(path))
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_key_pair(
    directory: Path,
    private_pem: str,
    public_pem: str,
    *,
    private_name: str = _PRIVATE_KEY_FILE,
    public_name: str = _PUBLIC_KEY_FILE,
) -> Tuple[Path, Path]:
    """Persist a key pair, both files mode 0600."""
    private_path = directory / private_name
    public_path = directory / public_name
    _atomic_write(private_path, private_pem)
    _atomic_write(public_path, public_pem)
    return private_path, public_path


def _key_dir(settings: Settings) -> Path:
    key_dir = Path(settings.shared_fs_root) / "keys"
    key_dir.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(key_dir, 0o700)
    except PermissionError:
        # Directory may be owned by another user inside a container
        logger.debug("key_dir_chmod_skipped", path=str(key_dir))
    return key_dir


def _load_or_create_key_pair(settings: Settings) -> Tuple[str, str]:
    key_dir = _key_dir(settings)
    private_path = key_dir / _PRIVATE_KEY_FILE
    if private_path.exists() and not private_path.is_symlink():
        private_pem = private_path.read_text()
        logger.info("signing_key_loaded", path=str(private_path))
        return private_pem, public_pem_from_private(private_pem)

    private_pem, public_pem = generate_key_pair()
    try:
        write_key_pair(key_dir, private_pem, public_pem)
    except OSError as exc:
        logger.error("signing_key_persist_failed", error=str(exc), path=str(key_dir))
        raise RuntimeError(
            "Unable to persist signing key; set JWT_PRIVATE_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("signing_key_generated", path=str(private_path), kid=settings.jwt_kid)
    return private_pem, public_pem


def load_signing_keys(settings: Settings) -> Optional[SigningKeys]:
    """Resolve the process-wide signing keys from settings.

    Returns ``None`` for an sso deployment that relies on the remote JWK set.
    """
    if settings.jwt_private_key:
        public_pem = settings.jwt_public_key or public_pem_from_private(
            settings.jwt_private_key
        )
        if settings.is_sso_mode:
            # sso services only verify, even when handed the private half
            return SigningKeys(public_pem=public_pem, kid=settings.jwt_kid)
        return SigningKeys(
            public_pem=public_pem, kid=settings.jwt_kid, private_pem=settings.jwt_private_key
        )
    if settings.jwt_public_key:
        if not settings.is_sso_mode:
            raise RuntimeError("JWT_PRIVATE_KEY is required when a public key is set in full mode")
        return SigningKeys(public_pem=settings.jwt_public_key, kid=settings.jwt_kid)
    if settings.is_sso_mode:
        return None
    private_pem, public_pem = _load_or_create_key_pair(settings)
    return SigningKeys(public_pem=public_pem, kid=settings.jwt_kid, private_pem=private_pem)


def load_or_create_mfa_key(settings: Settings) -> str:
    """Key material for encrypting TOTP secrets at rest."""
    if settings.mfa_secret_key:
        return settings.mfa_secret_key
    secret_path = _key_dir(settings) / _MFA_KEY_FILE
    if secret_path.exists() and not secret_path.is_symlink():
        persisted = secret_path.read_text().strip()
        if len(persisted) >= 32:
            return persisted
    generated = secrets.token_urlsafe(64)
    try:
        _atomic_write(secret_path, generated)
    except OSError as exc:
        logger.error("mfa_key_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist MFA key; set MFA_SECRET_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    return generated
