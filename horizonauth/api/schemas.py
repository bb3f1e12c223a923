from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from horizonauth.logging import get_correlation_id


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class JsonWebKey(BaseModel):
    kty: str
    use: str
    alg: str
    kid: str
    n: str
    e: str


class JwksResponse(BaseModel):
    keys: List[JsonWebKey]


class TokenResponse(BaseModel):
    """OAuth 2.0 token endpoint response body."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user_id: str


class HealthResponse(BaseModel):
    status: str = "ok"
    auth_mode: str
