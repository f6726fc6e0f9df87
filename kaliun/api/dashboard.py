"""Owner dashboard: the user's installations and profile."""

from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from sqlmodel import Session

from kaliun.api.deps import get_current_user, get_identity, redirect_with
from kaliun.database import get_session
from kaliun.errors import KaliunError
from kaliun.models.installation import Installation
from kaliun.models.user import User
from kaliun.schemas.auth import UserProfileResponse
from kaliun.schemas.installation import InstallationDetail, InstallationSummary, LogResponse
from kaliun.services import installation_service, store
from kaliun.services.identity import IdentityStrategy
from kaliun.utils.clock import isoformat

router = APIRouter(tags=["dashboard"])


def _summary_fields(installation: Installation) -> dict:
    return {
        "install_id": installation.install_id,
        "hostname": installation.hostname,
        "customer_name": installation.customer_name,
        "architecture": installation.architecture,
        "nixos_version": installation.nixos_version,
        "state": installation.state,
        "online": installation_service.is_online(installation),
        "last_health_at": isoformat(installation.last_health_at),
        "claimed_at": isoformat(installation.claimed_at),
    }


@router.get("/installations")
def list_installations(
    success: Optional[str] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """All installations owned by the current user, newest first."""
    installations = installation_service.list_for_user(session, user.id)
    return {
        "success": success,
        "installations": [InstallationSummary(**_summary_fields(i)) for i in installations],
    }


@router.get("/installations/{install_id}")
def installation_detail(
    install_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    installation = store.find_installation(session, install_id)
    if not installation or installation.claimed_by != user.id:
        return redirect_with(request, "/installations")

    logs = installation_service.recent_logs(session, installation, limit=20)
    return InstallationDetail(
        **_summary_fields(installation),
        customer_email=installation.customer_email,
        customer_address=installation.customer_address,
        last_health=installation.last_health,
        logs=[
            LogResponse(
                timestamp=isoformat(log.timestamp),
                service=log.service,
                level=log.level,
                message=log.message,
            )
            for log in logs
        ],
    )


@router.get("/settings", response_model=UserProfileResponse)
def get_settings_page(
    user: User = Depends(get_current_user),
    identity: IdentityStrategy = Depends(get_identity),
):
    return UserProfileResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        provider=user.provider,
        auth_mode=identity.name,
    )


@router.post("/settings/profile")
def update_profile(
    request: Request,
    name: str = Form(default=""),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    identity: IdentityStrategy = Depends(get_identity),
):
    if not name.strip():
        return redirect_with(request, "/settings", error="Name is required")
    try:
        identity.update_profile(session, user, name.strip())
    except KaliunError as e:
        return redirect_with(request, "/settings", error=e.message)
    return redirect_with(request, "/settings", success="Profile updated")
