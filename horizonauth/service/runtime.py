from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import jwt

from horizonauth.config import Settings, get_settings, reset_settings_cache
from horizonauth.logging import get_logger
from horizonauth.service.accounts import AccountManager
from horizonauth.service.auth import AuthService, authenticate_access_token
from horizonauth.service.devices import DeviceTracker
from horizonauth.service.email import EmailCallback, EmailDispatcher, build_email_dispatcher
from horizonauth.service.keys import load_or_create_mfa_key, load_signing_keys
from horizonauth.service.oauth import OAuthBridge
from horizonauth.service.passwords import PasswordHasher, bcrypt_verify
from horizonauth.service.push_tokens import PushTokenRegistry
from horizonauth.service.revocation import RevocationCache
from horizonauth.service.social import SocialLoginService
from horizonauth.service.tokens import AccessClaims, TokenCodec
from horizonauth.service.two_factor import TwoFactorEngine
from horizonauth.storage.memory import MemoryStore
from horizonauth.storage.postgres import PostgresStore
from horizonauth.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)

JWKS_PATH = "/.well-known/jwks.json"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide service graph.

    Full mode owns the credential store and every flow. SSO mode only
    verifies access tokens, so ``store``, ``auth`` and the flow services
    stay ``None`` there.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        email_callback: Optional[EmailCallback] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            auth_mode=self.settings.auth_mode.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        keys = load_signing_keys(self.settings)
        jwks_client = None
        if keys is None:
            jwks_url = f"{self.settings.auth_service_url.rstrip('/')}{JWKS_PATH}"
            jwks_client = jwt.PyJWKClient(jwks_url, cache_keys=True)
            logger.info("runtime_remote_jwks", jwks_url=jwks_url)
        self.tokens = TokenCodec(
            keys,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            jwks_client=jwks_client,
        )

        self.cache = self._build_cache()
        self.revocation = RevocationCache(self.cache)

        self.store: Optional[Union[MemoryStore, PostgresStore]] = None
        self.email: Optional[EmailDispatcher] = None
        self.auth: Optional[AuthService] = None
        self.oauth: Optional[OAuthBridge] = None
        self.social: Optional[SocialLoginService] = None
        self.two_factor: Optional[TwoFactorEngine] = None
        self.devices: Optional[DeviceTracker] = None
        self.push_tokens: Optional[PushTokenRegistry] = None
        self.accounts: Optional[AccountManager] = None
        if not self.settings.is_sso_mode:
            self._build_full_mode(email_callback)

        logger.info(
            "runtime_initialized",
            auth_mode=self.settings.auth_mode.value,
            redis_enabled=isinstance(self.cache, (RedisCache, SyncRedisCache)),
            two_factor=self.two_factor is not None,
            device_management=self.devices is not None,
            push_notifications=self.push_tokens is not None,
            account_management=self.accounts is not None,
            social_login=self.social is not None,
        )

    def _build_cache(self) -> Union[RedisCache, SyncRedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
                if self.settings.test_mode:
                    cache: Union[RedisCache, SyncRedisCache] = SyncRedisCache(
                        self.settings.redis_url
                    )
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the token blacklist; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; the token blacklist is "
                "in-memory and not shared between processes."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    def _build_full_mode(self, email_callback: Optional[EmailCallback]) -> None:
        settings = self.settings
        mfa_key = load_or_create_mfa_key(settings)
        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(mfa_encryption_key=mfa_key)
                if settings.use_memory_store
                else PostgresStore(settings.database_url, mfa_encryption_key=mfa_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        for client_id, redirect_uris in settings.oauth_clients.items():
            self.store.upsert_oauth_client(client_id, redirect_uris)
        if settings.oauth_clients:
            logger.info("oauth_clients_seeded", count=len(settings.oauth_clients))

        passwords = PasswordHasher(
            legacy_verifier=bcrypt_verify if settings.bcrypt_migration else None
        )
        self.email = build_email_dispatcher(settings, email_callback)
        if settings.enable_push_notifications:
            self.push_tokens = PushTokenRegistry(self.store)
        if settings.enable_device_management:
            self.devices = DeviceTracker(
                self.store, revocation=self.revocation, push_tokens=self.push_tokens
            )
        if settings.enable_two_factor:
            self.two_factor = TwoFactorEngine(
                self.store,
                issuer=settings.two_factor_issuer,
                backup_code_rounds=settings.backup_code_hash_rounds,
            )
        if settings.enable_account_management:
            self.accounts = AccountManager(self.store, revocation=self.revocation)

        self.auth = AuthService(
            self.store,
            self.tokens,
            self.revocation,
            passwords,
            two_factor=self.two_factor,
            devices=self.devices,
            accounts=self.accounts,
            email=self.email,
            default_tenant_id=settings.default_tenant_id,
            password_min_length=settings.password_min_length,
        )
        self.oauth = OAuthBridge(
            self.store,
            self.auth,
            code_ttl=timedelta(seconds=settings.oauth_code_ttl_seconds),
        )
        if settings.enable_social_login:
            self.social = SocialLoginService(self.store, self.auth)

    async def authenticate(self, access_token: str) -> AccessClaims:
        """Verify an access token in either mode."""
        if self.auth is not None:
            return await self.auth.authenticate(access_token)
        return await authenticate_access_token(self.tokens, self.revocation, access_token)

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Rebuild the runtime singleton from a fresh environment read."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        resolved = settings or get_settings()
        if not resolved.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(resolved)
        return runtime
