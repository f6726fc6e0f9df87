"""Human actions that bind devices: /claim (installations) and /link (device flow)."""

from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from sqlmodel import Session

from kaliun.api.deps import get_current_user, redirect_with
from kaliun.database import get_session
from kaliun.errors import KaliunError
from kaliun.models.user import User
from kaliun.schemas.auth import ClaimPreviewResponse
from kaliun.schemas.oauth import DeviceLinkResponse
from kaliun.services import claim_service, device_auth_service
from kaliun.utils.clock import isoformat
from kaliun.utils.codes import normalize_claim_code

router = APIRouter(tags=["claim"])


# --- Claim ---

@router.get("/claim")
def claim_page(error: Optional[str] = None):
    return {"page": "claim", "error": error}


@router.post("/claim")
def claim_code_entry(request: Request, code: str = Form(default="")):
    """Code typed by hand -> the claim page for that code."""
    if not code.strip():
        return redirect_with(request, "/claim", error="Enter the code shown on your device")
    return redirect_with(request, f"/claim/{normalize_claim_code(code)}")


@router.get("/claim/{code}", response_model=ClaimPreviewResponse)
def claim_preview(
    code: str,
    request: Request,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        installation = claim_service.preview(session, code)
    except KaliunError as e:
        return redirect_with(request, "/claim", error=e.message)
    return ClaimPreviewResponse(
        claim_code=installation.claim_code,
        install_id=installation.install_id,
        hostname=installation.hostname,
        architecture=installation.architecture,
    )


@router.post("/claim/{code}")
def claim_submit(
    code: str,
    request: Request,
    customer_name: str = Form(default=""),
    customer_email: str = Form(default=""),
    customer_address: str = Form(default=""),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    customer = claim_service.CustomerInfo(
        name=customer_name.strip(),
        email=customer_email.strip(),
        address=customer_address.strip(),
    )
    try:
        claim_service.claim(session, code, user.id, customer)
    except KaliunError as e:
        return redirect_with(request, "/claim", error=e.message)
    return redirect_with(request, "/installations", success="Device claimed!")


# --- Device link (RFC 8628 verification page) ---

@router.get("/link")
def link_page(
    request: Request,
    code: Optional[str] = None,
    error: Optional[str] = None,
    success: Optional[str] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if not code:
        return {"page": "link", "error": error, "success": success}
    try:
        record = device_auth_service.lookup(session, code)
    except KaliunError as e:
        return redirect_with(request, "/link", error=e.message)
    return DeviceLinkResponse(
        user_code=record.user_code,
        client_id=record.client_id,
        scope=record.scope,
        authorized=record.authorized,
        expires_at=isoformat(record.expires_at),
    )


@router.post("/link")
def link_submit(
    request: Request,
    code: str = Form(default=""),
    action: str = Form(default="approve"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        if action == "deny":
            device_auth_service.deny(session, code)
            return redirect_with(request, "/link", success="Request denied")
        outcome = device_auth_service.authorize(session, code, user.id)
    except KaliunError as e:
        return redirect_with(request, "/link", error=e.message)

    if outcome.already_authorized:
        return redirect_with(request, "/link", success="Device already authorized")
    return redirect_with(request, "/link", success="Device linked! You can return to your device.")
