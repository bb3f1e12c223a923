from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["user"])
    tenant_id: str = "default"
    full_name: Optional[str] = None
    is_active: bool = True
    deactivation_reason: Optional[str] = None
    email_verified: bool = False
    email_verify_token: Optional[str] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class RefreshTokenRecord:
    """Persisted half of a refresh token: its SHA-256 digest, never the JWT."""

    id: str
    hashed_token: str
    jti: str
    user_id: str
    expires_at: datetime
    device_id: Optional[str] = None
    parent_token_id: Optional[str] = None
    revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class Device:
    id: str
    user_id: str
    fingerprint: str
    name: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    device_type: str = "desktop"
    last_active: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class TwoFactorAuth:
    user_id: str
    secret: str
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class SocialAccount:
    id: str
    user_id: str
    provider: str
    provider_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None
    profile_data: Dict | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class AuthorizationCode:
    code: str
    user_id: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OAuthClient:
    id: str
    redirect_uris: List[str] = field(default_factory=list)
    name: Optional[str] = None


@dataclass
class PushToken:
    id: str
    user_id: str
    device_id: str
    token: str
    token_type: str
    active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
