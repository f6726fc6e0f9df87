"""Common API dependencies: current user, device bearer, identity backend."""

from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, Request, Response
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from kaliun.database import get_session
from kaliun.models.user import User
from kaliun.services.identity import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    CookieGrant,
    IdentityStrategy,
    LoginRequired,
)

bearer_scheme = HTTPBearer(auto_error=False)

LOGIN_PATH = "/login"


class RedirectToLogin(Exception):
    """Raised by `get_current_user`; rendered as a redirect that clears the cookies."""

    def __init__(self, reason: str = ""):
        super().__init__(reason)
        self.reason = reason


def get_identity(request: Request) -> IdentityStrategy:
    """The backend chosen at startup. Handlers never branch on which one it is."""
    return request.app.state.identity


def set_session_cookies(response: Response, grant: CookieGrant) -> None:
    response.set_cookie(
        ACCESS_COOKIE, grant.access_token, max_age=grant.access_max_age, httponly=True, samesite="lax"
    )
    if grant.refresh_token:
        response.set_cookie(
            REFRESH_COOKIE, grant.refresh_token, max_age=grant.refresh_max_age, httponly=True, samesite="lax"
        )


def clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)


def get_current_user(
    request: Request,
    response: Response,
    session: Session = Depends(get_session),
    identity: IdentityStrategy = Depends(get_identity),
) -> User:
    """Resolve the session cookie to a user, or send the browser to the login page."""
    try:
        resolution = identity.resolve(
            session,
            request.cookies.get(ACCESS_COOKIE),
            request.cookies.get(REFRESH_COOKIE),
        )
    except LoginRequired as e:
        raise RedirectToLogin(str(e)) from e

    if resolution.refreshed:
        set_session_cookies(response, resolution.refreshed)
        request.state.refreshed_cookies = resolution.refreshed
    return resolution.user


def redirect_with(request: Request, path: str, **params: str) -> RedirectResponse:
    """Redirect-with-message for the human flows (`?error=` / `?success=`)."""
    query = urlencode({k: v for k, v in params.items() if v})
    response = RedirectResponse(f"{path}?{query}" if query else path, status_code=303)
    refreshed = getattr(request.state, "refreshed_cookies", None)
    if refreshed:
        set_session_cookies(response, refreshed)
    return response


def login_redirect() -> RedirectResponse:
    response = RedirectResponse(LOGIN_PATH, status_code=303)
    clear_session_cookies(response)
    return response


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Bearer token from the Authorization header, if any. Validation is up to the caller."""
    if not credentials:
        return None
    return credentials.credentials
