"""Human sign-in endpoints. Failures redirect back with `?error=`."""

from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlmodel import Session

from kaliun.api.deps import (
    clear_session_cookies,
    get_identity,
    redirect_with,
    set_session_cookies,
)
from kaliun.config import settings
from kaliun.database import get_session
from kaliun.errors import KaliunError, ValidationFailed
from kaliun.schemas.auth import TokenAdoptRequest
from kaliun.services.identity import ACCESS_COOKIE, IdentityStrategy, IdpStrategy

router = APIRouter(tags=["auth"])

HOME_PATH = "/installations"

# PKCE verifier, kept by the browser between /auth/{provider} and /auth/callback
VERIFIER_COOKIE = "sb_code_verifier"
VERIFIER_MAX_AGE = 10 * 60


@router.get("/login")
def login_page(error: Optional[str] = None, message: Optional[str] = None):
    """Entry point the human flows redirect to."""
    return {"page": "login", "error": error, "message": message}


@router.get("/register")
def register_page(error: Optional[str] = None):
    return {"page": "register", "error": error}


@router.post("/auth/register")
def register(
    request: Request,
    name: str = Form(default=""),
    email: str = Form(default=""),
    password: str = Form(default=""),
    session: Session = Depends(get_session),
    identity: IdentityStrategy = Depends(get_identity),
):
    try:
        result = identity.register(session, name, email, password)
    except KaliunError as e:
        return redirect_with(request, "/register", error=e.message)

    response = redirect_with(request, HOME_PATH)
    set_session_cookies(response, result.cookies)
    return response


@router.post("/auth/login")
def login(
    request: Request,
    email: str = Form(default=""),
    password: str = Form(default=""),
    session: Session = Depends(get_session),
    identity: IdentityStrategy = Depends(get_identity),
):
    try:
        result = identity.login(session, email, password)
    except KaliunError as e:
        return redirect_with(request, "/login", error=e.message)

    response = redirect_with(request, HOME_PATH)
    set_session_cookies(response, result.cookies)
    return response


@router.post("/auth/token")
def adopt_tokens(
    body: TokenAdoptRequest,
    session: Session = Depends(get_session),
    identity: IdentityStrategy = Depends(get_identity),
):
    """Tokens the browser got from the IdP directly (OAuth implicit flow)."""
    if not isinstance(identity, IdpStrategy):
        raise ValidationFailed("Token sign-in needs the external identity provider")
    result = identity.accept_tokens(session, body.access_token, body.refresh_token)
    response = JSONResponse({"success": True})
    set_session_cookies(response, result.cookies)
    return response


@router.get("/auth/callback")
def social_callback(
    request: Request,
    code: Optional[str] = None,
    error_description: Optional[str] = None,
    session: Session = Depends(get_session),
    identity: IdentityStrategy = Depends(get_identity),
):
    """Return leg of Google/GitHub sign-in: trade the code for session cookies."""
    if not code:
        response = redirect_with(request, "/login", error=error_description or "Sign-in was cancelled")
    else:
        try:
            result = identity.complete_social(session, code, request.cookies.get(VERIFIER_COOKIE))
        except KaliunError as e:
            response = redirect_with(request, "/login", error=e.message)
        else:
            response = redirect_with(request, HOME_PATH)
            set_session_cookies(response, result.cookies)
    response.delete_cookie(VERIFIER_COOKIE)
    return response


@router.get("/auth/{provider}")
def social_login(
    provider: str,
    request: Request,
    identity: IdentityStrategy = Depends(get_identity),
):
    """Send the browser to the IdP's Google/GitHub sign-in."""
    try:
        target = identity.social_redirect(provider, f"{settings.base_url.rstrip('/')}/auth/callback")
    except KaliunError as e:
        return redirect_with(request, "/login", error=e.message)
    response = RedirectResponse(target.url, status_code=303)
    response.set_cookie(
        VERIFIER_COOKIE, target.code_verifier, max_age=VERIFIER_MAX_AGE, httponly=True, samesite="lax"
    )
    return response


@router.get("/logout")
def logout(
    request: Request,
    session: Session = Depends(get_session),
    identity: IdentityStrategy = Depends(get_identity),
):
    identity.logout(session, request.cookies.get(ACCESS_COOKIE))
    response = redirect_with(request, "/login")
    clear_session_cookies(response)
    return response
