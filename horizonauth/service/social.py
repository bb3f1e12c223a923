from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from horizonauth.logging import get_logger
from horizonauth.service.auth import AuthResult, AuthService, TwoFactorRequired
from horizonauth.service.errors import (
    AccountDeactivated,
    SocialAccountAlreadyLinked,
    ValidationError,
)
from horizonauth.storage.common import CredentialStore
from horizonauth.storage.errors import ConstraintViolation
from horizonauth.storage.models import SocialAccount, User

logger = get_logger(__name__)

SOCIAL_PROVIDERS = ("google", "facebook")


@dataclass(frozen=True)
class SocialProfile:
    """Identity asserted by an upstream provider after its own OAuth dance."""

    provider: str
    provider_id: str
    email: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    profile_data: Dict[str, Any] = field(default_factory=dict)


class SocialLoginService:
    def __init__(self, store: CredentialStore, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    @staticmethod
    def _check_provider(provider: str) -> str:
        provider = provider.lower()
        if provider not in SOCIAL_PROVIDERS:
            raise ValidationError(
                "unsupported social provider", detail={"provider": provider}
            )
        return provider

    async def authenticate(
        self, profile: SocialProfile
    ) -> Union[AuthResult, TwoFactorRequired]:
        """Sign in with a provider profile, linking or creating the local user.

        Lookup order: existing link, then an existing user with the same
        email (which gets linked), then a new password-less user. Users with
        2FA enabled get a ``TwoFactorRequired`` challenge instead of tokens.
        """
        provider = self._check_provider(profile.provider)
        user = self.find_user_by_social_account(provider, profile.provider_id)
        if user is None:
            user = self.store.get_user_by_email(profile.email)
            if user is not None:
                self.link_social_account(user.id, profile)
                logger.info("social_account_linked_on_login", user_id=user.id, provider=provider)
            else:
                user = self._create_user_from_profile(profile)
        if not user.is_active:
            raise AccountDeactivated(user.deactivation_reason)
        if self.auth.two_factor and self.auth.two_factor.is_enabled(user.id):
            logger.info("social_login_two_factor_required", user_id=user.id, provider=provider)
            return TwoFactorRequired(user_id=user.id)
        logger.info("social_login", user_id=user.id, provider=provider)
        return await self.auth.issue_session(user)

    def _create_user_from_profile(self, profile: SocialProfile) -> User:
        user = self.store.create_user(
            profile.email,
            None,
            tenant_id=self.auth.default_tenant_id,
            roles=["user"],
            full_name=profile.display_name,
            email_verified=True,
        )
        self.link_social_account(user.id, profile)
        logger.info("social_user_created", user_id=user.id, provider=profile.provider)
        return user

    def link_social_account(self, user_id: str, profile: SocialProfile) -> SocialAccount:
        provider = self._check_provider(profile.provider)
        existing = self.store.get_social_account(provider, profile.provider_id)
        if existing and existing.user_id != user_id:
            logger.warning(
                "social_account_link_conflict", user_id=user_id, provider=provider
            )
            raise SocialAccountAlreadyLinked(provider)
        if existing:
            updated = self.store.update_social_account(
                existing.id,
                email=profile.email,
                name=profile.display_name,
                avatar=profile.avatar,
                profile_data=profile.profile_data,
            )
            return updated or existing
        try:
            return self.store.create_social_account(
                user_id,
                provider,
                profile.provider_id,
                email=profile.email,
                name=profile.display_name,
                avatar=profile.avatar,
                profile_data=profile.profile_data,
            )
        except ConstraintViolation as exc:
            # Lost a race with another link of the same provider identity
            raise SocialAccountAlreadyLinked(provider) from exc

    def find_user_by_social_account(self, provider: str, provider_id: str) -> Optional[User]:
        account = self.store.get_social_account(provider.lower(), provider_id)
        if not account:
            return None
        return self.store.get_user(account.user_id)
