"""Device-facing installation endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Response, status
from sqlmodel import Session

from kaliun.api.deps import get_bearer_token
from kaliun.database import get_session
from kaliun.schemas.installation import (
    ConfigResponse,
    LogsRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
)
from kaliun.services import installation_service

router = APIRouter(prefix="/installations", tags=["installations"])


@router.post("/register", response_model=RegisterResponse)
def register(request: RegisterRequest, response: Response, session: Session = Depends(get_session)):
    """Register a device. Calling again with the same install_id returns the same claim code."""
    installation, created = installation_service.register(
        session,
        install_id=request.install_id,
        hostname=request.hostname,
        architecture=request.architecture,
        nixos_version=request.nixos_version,
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return RegisterResponse(claim_code=installation.claim_code)


@router.post("/token/refresh", response_model=RefreshResponse)
def refresh_token(request: RefreshRequest, session: Session = Depends(get_session)):
    """Trade the device refresh token for a new access token."""
    return RefreshResponse(**installation_service.refresh_access_token(session, request.refresh_token))


@router.get("/{install_id}/config", response_model=ConfigResponse, response_model_exclude_unset=True)
def get_config(
    install_id: str,
    bearer: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
):
    """Claim-gated config: bootstrap credentials once, bearer-authenticated resync afterwards."""
    return installation_service.fetch_config(session, install_id, bearer)


@router.delete("/{install_id}/config", status_code=status.HTTP_204_NO_CONTENT)
def confirm_config(install_id: str, session: Session = Depends(get_session)):
    """Device confirms it stored its credentials. Anonymous config fetches stop here."""
    installation_service.confirm_config(session, install_id)


@router.post("/{install_id}/health", status_code=status.HTTP_204_NO_CONTENT)
def submit_health(
    install_id: str,
    payload: dict[str, Any] = Body(...),
    bearer: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
):
    installation = installation_service.require_device(session, install_id, bearer)
    installation_service.submit_health(session, installation, payload)


@router.post("/{install_id}/logs", status_code=status.HTTP_204_NO_CONTENT)
def submit_logs(
    install_id: str,
    request: LogsRequest,
    bearer: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
):
    installation = installation_service.require_device(session, install_id, bearer)
    installation_service.submit_logs(session, installation, request.logs, request.service, request.level)
