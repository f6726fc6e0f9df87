"""OAuth 2.0 device flow endpoints (RFC 8628)."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlmodel import Session

from kaliun.api.deps import get_bearer_token
from kaliun.database import get_session
from kaliun.errors import OAuthError
from kaliun.schemas.oauth import (
    DeviceCodeRequest,
    DeviceCodeResponse,
    TokenRequest,
    TokenResponse,
    UserInfoResponse,
)
from kaliun.services import device_auth_service

router = APIRouter(prefix="/oauth", tags=["oauth"])


async def _params(request: Request) -> dict[str, Any]:
    """OAuth clients send form bodies; some send JSON. Accept both."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise OAuthError("Malformed JSON body", code="invalid_request")
        if not isinstance(body, dict):
            raise OAuthError("Expected a JSON object", code="invalid_request")
        return body
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


async def device_code_params(request: Request) -> DeviceCodeRequest:
    try:
        return DeviceCodeRequest(**await _params(request))
    except ValidationError:
        raise OAuthError("client_id is required", code="invalid_request")


async def token_params(request: Request) -> TokenRequest:
    try:
        return TokenRequest(**await _params(request))
    except ValidationError:
        raise OAuthError("grant_type is required", code="invalid_request")


@router.post("/device/code", response_model=DeviceCodeResponse)
def device_code(
    params: DeviceCodeRequest = Depends(device_code_params),
    session: Session = Depends(get_session),
):
    """Start a device authorization: returns the device_code/user_code pair."""
    return device_auth_service.request_code(session, params.client_id, params.scope)


@router.post("/token", response_model=TokenResponse)
def token(
    params: TokenRequest = Depends(token_params),
    session: Session = Depends(get_session),
):
    """Device-code poll or refresh_token grant.

    While the user has not approved yet this answers 400 authorization_pending;
    the device keeps polling at the advertised interval.
    """
    if params.grant_type == device_auth_service.DEVICE_CODE_GRANT:
        return device_auth_service.exchange_token(session, params.device_code or "")
    if params.grant_type == device_auth_service.REFRESH_TOKEN_GRANT:
        return device_auth_service.refresh(session, params.refresh_token or "")
    raise OAuthError(f"Unsupported grant_type: {params.grant_type}", code="unsupported_grant_type")


@router.get("/userinfo", response_model=UserInfoResponse)
def userinfo(
    bearer: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
):
    return device_auth_service.userinfo(session, bearer)
