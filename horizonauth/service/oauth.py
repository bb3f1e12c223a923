from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from horizonauth.logging import get_logger
from horizonauth.service.auth import AuthResult, AuthService
from horizonauth.service.errors import OAuthExchangeFailed, ValidationError
from horizonauth.storage.common import CredentialStore
from horizonauth.storage.models import AuthorizationCode

logger = get_logger(__name__)

PKCE_METHODS = ("S256", "plain")
AUTHORIZATION_CODE_TTL = timedelta(minutes=5)


def s256_challenge(code_verifier: str) -> str:
    """``base64url(SHA256(verifier))`` without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def pkce_matches(code: AuthorizationCode, code_verifier: str) -> bool:
    if code.code_challenge_method == "S256":
        try:
            expected = s256_challenge(code_verifier)
        except UnicodeEncodeError:
            return False
    else:
        expected = code_verifier
    return hmac.compare_digest(expected.encode("utf-8"), code.code_challenge.encode("utf-8"))


class OAuthBridge:
    """Authorization-code grant with PKCE for first-party clients.

    Every exchange failure surfaces as the same ``OAuthExchangeFailed``; the
    concrete reason is only logged.
    """

    def __init__(
        self,
        store: CredentialStore,
        auth: AuthService,
        *,
        code_ttl: timedelta = AUTHORIZATION_CODE_TTL,
    ) -> None:
        self.store = store
        self.auth = auth
        self.code_ttl = code_ttl

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_authorization_code(
        self,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str = "S256",
    ) -> AuthorizationCode:
        # Client and redirect are checked at redemption only
        if code_challenge_method not in PKCE_METHODS:
            raise ValidationError(
                "unsupported code_challenge_method",
                detail={"code_challenge_method": code_challenge_method},
            )
        if not code_challenge:
            raise ValidationError("code_challenge is required")
        record = self.store.create_authorization_code(
            secrets.token_urlsafe(32),
            user_id=user_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            expires_at=self._now() + self.code_ttl,
        )
        logger.info("authorization_code_issued", user_id=user_id, client_id=client_id)
        return record

    def _reject(self, reason: str, client_id: str) -> OAuthExchangeFailed:
        logger.warning("oauth_exchange_rejected", reason=reason, client_id=client_id)
        return OAuthExchangeFailed()

    async def exchange_code(
        self, code: str, code_verifier: str, client_id: str, redirect_uri: str
    ) -> AuthResult:
        now = self._now()
        client = self.store.get_oauth_client(client_id)
        if not client:
            raise self._reject("unknown_client", client_id)
        if redirect_uri not in client.redirect_uris:
            raise self._reject("redirect_uri_not_allowed", client_id)

        record = self.store.get_authorization_code(code)
        if not record:
            raise self._reject("unknown_code", client_id)
        if record.used_at is not None:
            raise self._reject("code_replayed", client_id)
        if record.expires_at <= now:
            raise self._reject("code_expired", client_id)
        if record.client_id != client_id:
            raise self._reject("client_mismatch", client_id)
        if record.redirect_uri != redirect_uri:
            raise self._reject("redirect_uri_mismatch", client_id)
        if not pkce_matches(record, code_verifier):
            raise self._reject("pkce_mismatch", client_id)

        if not self.store.mark_authorization_code_used(code, now):
            raise self._reject("code_replayed", client_id)

        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            raise self._reject("user_unavailable", client_id)
        logger.info("authorization_code_redeemed", user_id=user.id, client_id=client_id)
        return await self.auth.issue_session(user)
