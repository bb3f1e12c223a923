from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import jwt
from cryptography.hazmat.primitives import serialization
from jwt.algorithms import RSAAlgorithm

from horizonauth.logging import get_logger
from horizonauth.service.errors import FeatureDisabled, TokenInvalidOrExpired
from horizonauth.service.keys import SigningKeys
from horizonauth.storage.models import User

logger = get_logger(__name__)

ALGORITHM = "RS256"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_jti: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        return TokenCodec.calculate_ttl(self.access_expires_at)


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    tenant_id: str
    roles: List[str] = field(default_factory=list)
    jti: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    jti: str
    expires_at: datetime


def _whole_seconds(value: datetime) -> datetime:
    return value.replace(microsecond=0)


class TokenCodec:
    """RS256 access/refresh token signing and verification.

    Expiry is compared against the caller's clock with ``exp <= now`` meaning
    expired, so a token presented at its exact expiry instant is rejected.
    """

    def __init__(
        self,
        keys: Optional[SigningKeys],
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        jwks_client: Optional[jwt.PyJWKClient] = None,
    ) -> None:
        if keys is None and jwks_client is None:
            raise ValueError("TokenCodec needs signing keys or a JWK set client")
        self.keys = keys
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._jwks_client = jwks_client
        self._public_key = (
            serialization.load_pem_public_key(keys.public_pem.encode()) if keys else None
        )
        self._private_key = (
            serialization.load_pem_private_key(keys.private_pem.encode(), password=None)
            if keys and keys.private_pem
            else None
        )

    @property
    def uses_remote_keys(self) -> bool:
        """True when verification keys come from a remote JWK set."""
        return self._public_key is None

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # hashing / ttl helpers
    @staticmethod
    def hash_token(raw_token: str) -> str:
        """SHA-256 hex digest used to look up persisted refresh tokens."""
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    @staticmethod
    def calculate_ttl(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Whole seconds until ``expires_at``, never negative."""
        current = now or datetime.now(timezone.utc)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(0, int((expires_at - current).total_seconds()))

    # signing
    def _encode(self, payload: Dict[str, Any]) -> str:
        if self._private_key is None:
            raise FeatureDisabled("token_signing")
        headers = {"kid": self.keys.kid} if self.keys else None
        return jwt.encode(payload, self._private_key, algorithm=ALGORITHM, headers=headers)

    def sign_access_token(
        self, user: User, *, jti: Optional[str] = None, now: Optional[datetime] = None
    ) -> Tuple[str, datetime]:
        issued_at = _whole_seconds(now or self._now())
        expires_at = issued_at + self.access_ttl
        payload: Dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "roles": list(user.roles),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "token_type": ACCESS_TOKEN_TYPE,
        }
        if jti:
            payload["jti"] = jti
        return self._encode(payload), expires_at

    def sign_refresh_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Tuple[str, str, datetime]:
        """Return ``(raw_token, jti, expires_at)``; only the hash may be persisted."""
        issued_at = _whole_seconds(now or self._now())
        expires_at = issued_at + self.refresh_ttl
        jti = str(uuid.uuid4())
        payload = {
            "sub": user_id,
            "jti": jti,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "token_type": REFRESH_TOKEN_TYPE,
        }
        return self._encode(payload), jti, expires_at

    def issue_pair(self, user: User, *, now: Optional[datetime] = None) -> TokenPair:
        """Mint a refresh token and an access token bound to the same jti."""
        current = now or self._now()
        refresh_token, jti, refresh_exp = self.sign_refresh_token(user.id, now=current)
        access_token, access_exp = self.sign_access_token(user, jti=jti, now=current)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_jti=jti,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    # verification
    def _verification_key(self, token: str) -> Any:
        if self._public_key is not None:
            return self._public_key
        return self._jwks_client.get_signing_key_from_jwt(token).key

    def _decode(
        self, token: str, expected_type: str, now: Optional[datetime]
    ) -> Dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                self._verification_key(token),
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                audience=self.audience,
                # exp is checked below against the caller's clock
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "sub"]},
            )
        except jwt.PyJWTError as exc:
            logger.info("token_verification_failed", reason=type(exc).__name__)
            raise TokenInvalidOrExpired() from exc
        if payload.get("token_type") != expected_type:
            logger.info("token_verification_failed", reason="wrong_token_type")
            raise TokenInvalidOrExpired()
        current = now or self._now()
        if int(payload["exp"]) <= current.timestamp():
            logger.info("token_verification_failed", reason="expired")
            raise TokenInvalidOrExpired()
        return payload

    def verify_access_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> AccessClaims:
        payload = self._decode(token, ACCESS_TOKEN_TYPE, now)
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=payload.get("email", ""),
            tenant_id=payload.get("tenant_id", ""),
            roles=list(payload.get("roles") or []),
            jti=payload.get("jti"),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )

    def verify_refresh_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> RefreshClaims:
        payload = self._decode(token, REFRESH_TOKEN_TYPE, now)
        jti = payload.get("jti")
        if not jti:
            logger.info("token_verification_failed", reason="missing_jti")
            raise TokenInvalidOrExpired()
        return RefreshClaims(
            user_id=str(payload["sub"]),
            jti=str(jti),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )

    # key distribution
    def jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        """Public signing key as a JWK set keyed by the stable key id."""
        if self._public_key is None:
            raise FeatureDisabled("jwks")
        jwk = RSAAlgorithm.to_jwk(self._public_key, as_dict=True)
        jwk.update({"use": "sig", "alg": ALGORITHM, "kid": self.keys.kid})
        return {"keys": [jwk]}
