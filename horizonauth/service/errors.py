from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that callers can branch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Identity-specific failures


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""

    error_code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class AccountDeactivated(ForbiddenError):
    error_code = "account_deactivated"

    def __init__(self, reason: Optional[str] = None) -> None:
        message = (
            f"Account is deactivated: {reason}" if reason else "Account is deactivated"
        )
        super().__init__(message, detail={"reason": reason} if reason else None)
        self.reason = reason


class TokenInvalidOrExpired(AuthenticationError):
    """Signature, claim, or expiry failure on an access or refresh token."""

    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class TokenReused(AuthenticationError):
    """A rotated-away refresh token was presented again.

    Raised only after every refresh token of the owning user was revoked.
    """

    error_code = "token_reused"

    def __init__(self) -> None:
        super().__init__("Token reuse detected. All sessions have been revoked.")


class InvalidTwoFactorCode(AuthenticationError):
    error_code = "invalid_two_factor_code"

    def __init__(self) -> None:
        super().__init__("Invalid two-factor authentication code")


class BackupCodeAlreadyUsed(AuthenticationError):
    error_code = "backup_code_used"

    def __init__(self) -> None:
        super().__init__("Backup code has already been used")


class FeatureDisabled(ForbiddenError):
    """An optional subsystem was not configured into this deployment."""

    error_code = "feature_disabled"

    def __init__(self, feature: str) -> None:
        super().__init__(f"{feature} feature is not enabled", detail={"feature": feature})
        self.feature = feature


class SocialAccountAlreadyLinked(ConflictError):
    error_code = "social_account_linked"

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"This {provider} account is already linked to another user",
            detail={"provider": provider},
        )
        self.provider = provider


class OAuthExchangeFailed(BadRequestError):
    """Authorization code exchange rejected.

    The message never reveals which check failed; the cause is logged instead.
    """

    error_code = "invalid_grant"

    def __init__(self) -> None:
        super().__init__("Invalid authorization code exchange")


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "AccountDeactivated",
    "TokenInvalidOrExpired",
    "TokenReused",
    "InvalidTwoFactorCode",
    "BackupCodeAlreadyUsed",
    "FeatureDisabled",
    "SocialAccountAlreadyLinked",
    "OAuthExchangeFailed",
]
