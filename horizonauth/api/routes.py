from __future__ import annotations

from fastapi import APIRouter, Depends, Form

from horizonauth.api.schemas import HealthResponse, JwksResponse, TokenResponse
from horizonauth.logging import get_logger
from horizonauth.service.errors import BadRequestError, FeatureDisabled
from horizonauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()

AUTHORIZATION_CODE_GRANT = "authorization_code"


@router.get("/healthz", response_model=HealthResponse)
async def healthz(runtime: Runtime = Depends(get_runtime)) -> HealthResponse:
    return HealthResponse(auth_mode=runtime.settings.auth_mode.value)


@router.get("/.well-known/jwks.json", response_model=JwksResponse)
async def jwks(runtime: Runtime = Depends(get_runtime)) -> dict:
    return runtime.tokens.jwks()


@router.post("/oauth/token", response_model=TokenResponse)
async def oauth_token(
    grant_type: str = Form(..., max_length=64),
    code: str = Form(..., max_length=512),
    code_verifier: str = Form(..., max_length=256),
    client_id: str = Form(..., max_length=255),
    redirect_uri: str = Form(..., max_length=2048),
    runtime: Runtime = Depends(get_runtime),
) -> TokenResponse:
    if runtime.oauth is None:
        raise FeatureDisabled("oauth")
    if grant_type != AUTHORIZATION_CODE_GRANT:
        raise BadRequestError(
            "Unsupported grant_type", error_code="unsupported_grant_type"
        )
    result = await runtime.oauth.exchange_code(code, code_verifier, client_id, redirect_uri)
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        user_id=result.user.id,
    )
