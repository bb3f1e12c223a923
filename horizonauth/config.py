from __future__ import annotations

import json
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AuthMode(str, Enum):
    """Deployment topology.

    - FULL: owns the credential store, signs tokens, runs every flow
    - SSO: verify-only consumer; holds the public key (or a JWKS URL) and no store
    """

    FULL = "full"
    SSO = "sso"


class EmailProvider(str, Enum):
    """Closed set of outbound email transports selected at configuration time."""

    CONSOLE = "console"
    CUSTOM = "custom"
    RESEND = "resend"
    SENDGRID = "sendgrid"


class SameSite(str, Enum):
    STRICT = "strict"
    LAX = "lax"
    NONE = "none"


@dataclass(frozen=True)
class RateLimitRule:
    """Requests allowed per window for one endpoint class."""

    limit: int
    window_seconds: int

    @classmethod
    def parse(cls, raw: str) -> "RateLimitRule":
        """Parse the ``"limit/seconds"`` form, e.g. ``"5/60"``."""
        try:
            limit_raw, window_raw = raw.split("/", 1)
            limit, window = int(limit_raw), int(window_raw)
        except ValueError as exc:
            raise ValueError(f"rate limit must look like 'limit/seconds', got {raw!r}") from exc
        if limit <= 0 or window <= 0:
            raise ValueError(f"rate limit values must be positive, got {raw!r}")
        return cls(limit=limit, window_seconds=window)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Identity provider settings, read from the environment and ``.env``."""

    auth_mode: AuthMode = env_field(AuthMode.FULL, "AUTH_MODE")
    auth_service_url: str | None = env_field(
        None,
        "AUTH_SERVICE_URL",
        description="Base URL of the full-mode service; required when AUTH_MODE=sso",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/horizonauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/horizonauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Signing keys
    jwt_private_key: str | None = env_field(None, "JWT_PRIVATE_KEY")
    jwt_public_key: str | None = env_field(None, "JWT_PUBLIC_KEY")
    jwt_kid: str = env_field("horizon-auth-key-1", "JWT_KID")
    jwt_issuer: str = env_field("horizon-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("horizon-api", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "JWT_ACCESS_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "JWT_REFRESH_TTL_MINUTES")

    default_tenant_id: str = env_field("default", "DEFAULT_TENANT_ID")

    # Cookies (consumed by the HTTP layer of embedding applications)
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_same_site: SameSite = env_field(SameSite.LAX, "COOKIE_SAME_SITE")

    # Optional subsystems
    enable_two_factor: bool = env_field(True, "ENABLE_TWO_FACTOR")
    enable_device_management: bool = env_field(True, "ENABLE_DEVICE_MANAGEMENT")
    enable_push_notifications: bool = env_field(False, "ENABLE_PUSH_NOTIFICATIONS")
    enable_account_management: bool = env_field(True, "ENABLE_ACCOUNT_MANAGEMENT")
    enable_social_login: bool = env_field(False, "ENABLE_SOCIAL_LOGIN")
    two_factor_issuer: str = env_field("HorizonAuth", "TWO_FACTOR_ISSUER")

    rate_limit_login: str = env_field("5/60", "RATE_LIMIT_LOGIN")
    rate_limit_register: str = env_field("3/60", "RATE_LIMIT_REGISTER")
    rate_limit_password_reset: str = env_field("3/3600", "RATE_LIMIT_PASSWORD_RESET")

    # Email
    email_provider: EmailProvider = env_field(EmailProvider.CONSOLE, "EMAIL_PROVIDER")
    email_api_key: str | None = env_field(None, "EMAIL_API_KEY")
    email_from: str = env_field("noreply@example.com", "EMAIL_FROM")
    email_from_name: str = env_field("Horizon Auth", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Credentials
    bcrypt_migration: bool = env_field(
        False,
        "BCRYPT_MIGRATION",
        description="Accept legacy bcrypt hashes and re-hash them with Argon2id on login",
    )
    backup_code_hash_rounds: int = env_field(10, "BACKUP_CODE_HASH_ROUNDS")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # OAuth bridge
    oauth_code_ttl_seconds: int = env_field(300, "OAUTH_CODE_TTL_SECONDS")
    oauth_clients: Dict[str, List[str]] = env_field(
        {},
        "OAUTH_CLIENTS",
        description='JSON map of client id to allowed redirect URIs, e.g. {"web": ["https://app/cb"]}',
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("auth_mode", mode="before")
    @classmethod
    def _validate_auth_mode(cls, value: Any) -> AuthMode:
        return AuthMode(str(value).lower())

    @field_validator("email_provider", mode="before")
    @classmethod
    def _validate_email_provider(cls, value: Any) -> EmailProvider:
        return EmailProvider(str(value).lower())

    @field_validator("cookie_same_site", mode="before")
    @classmethod
    def _validate_same_site(cls, value: Any) -> SameSite:
        return SameSite(str(value).lower())

    @field_validator("jwt_private_key", "jwt_public_key")
    @classmethod
    def _unescape_pem(cls, value: str | None) -> str | None:
        # Single-line env values carry PEM newlines as literal "\n"
        if value and "\\n" in value:
            return value.replace("\\n", "\n")
        return value or None

    @field_validator("oauth_clients", mode="before")
    @classmethod
    def _parse_oauth_clients(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return {}
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("OAUTH_CLIENTS must be a JSON object") from exc
        return value

    @field_validator("rate_limit_login", "rate_limit_register", "rate_limit_password_reset")
    @classmethod
    def _validate_rate_limit(cls, value: str) -> str:
        RateLimitRule.parse(value)
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes", "oauth_code_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @model_validator(mode="after")
    def _check_mode_requirements(self) -> "Settings":
        if self.auth_mode == AuthMode.SSO and not (
            self.auth_service_url or self.jwt_public_key
        ):
            raise ValueError(
                "AUTH_SERVICE_URL or JWT_PUBLIC_KEY is required when AUTH_MODE=sso"
            )
        return self

    @property
    def is_sso_mode(self) -> bool:
        return self.auth_mode == AuthMode.SSO

    @property
    def login_rate_limit(self) -> RateLimitRule:
        return RateLimitRule.parse(self.rate_limit_login)

    @property
    def register_rate_limit(self) -> RateLimitRule:
        return RateLimitRule.parse(self.rate_limit_register)

    @property
    def password_reset_rate_limit(self) -> RateLimitRule:
        return RateLimitRule.parse(self.rate_limit_password_reset)

    def cookie_options(self) -> dict[str, Any]:
        """Keyword arguments for setting the refresh-token cookie."""
        return {
            "domain": self.cookie_domain,
            "secure": self.cookie_secure,
            "samesite": self.cookie_same_site.value,
            "httponly": True,
            "max_age": self.refresh_token_ttl_minutes * 60,
        }


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
