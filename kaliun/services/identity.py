"""Cookie session -> user identity.

Two interchangeable backends, picked once at startup:

- LocalStrategy: the cookie is a session token looked up in the `sessions`
  table. Expiry means logging in again.
- IdpStrategy: the cookie is an access token from the external identity
  provider. When it stops working the refresh cookie is traded for a new
  pair before giving up.

Routes only ever see `resolve()` and its `Resolution`.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from kaliun.config import Settings
from kaliun.errors import Conflict, Internal, Unauthorized, ValidationFailed
from kaliun.models.user import LocalSession, User
from kaliun.services import store
from kaliun.services.idp_client import IdpClient, IdpError, IdpSession, IdpUser
from kaliun.utils.clock import utcnow
from kaliun.utils.security import (
    code_challenge,
    generate_code_verifier,
    generate_session_token,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "sb_access_token"
REFRESH_COOKIE = "sb_refresh_token"

IDP_ACCESS_MAX_AGE = 60 * 60  # 1 hour
IDP_REFRESH_MAX_AGE = 30 * 24 * 60 * 60  # 30 days

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72

SOCIAL_PROVIDERS = ("google", "github")


class LoginRequired(Exception):
    """No usable credential; send the user to the login page."""


@dataclass
class CookieGrant:
    """Cookies to hand to the browser after login or a silent refresh."""

    access_token: str
    access_max_age: int
    refresh_token: Optional[str] = None
    refresh_max_age: Optional[int] = None


@dataclass
class Resolution:
    user: User
    refreshed: Optional[CookieGrant] = None


@dataclass
class LoginResult:
    user: User
    cookies: CookieGrant


@dataclass
class SocialRedirect:
    """IdP authorize URL plus the PKCE verifier to keep until the callback."""

    url: str
    code_verifier: str


def _require_credentials(email: str, password: str) -> str:
    email = (email or "").strip().lower()
    if not email or not password:
        raise ValidationFailed("Email and password required")
    if "@" not in email:
        raise ValidationFailed("Invalid email address")
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise ValidationFailed(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return email


class IdentityStrategy:
    name = ""

    def resolve(self, session: Session, access_cookie: Optional[str], refresh_cookie: Optional[str]) -> Resolution:
        raise NotImplementedError

    def login(self, session: Session, email: str, password: str) -> LoginResult:
        raise NotImplementedError

    def register(self, session: Session, name: str, email: str, password: str) -> LoginResult:
        raise NotImplementedError

    def logout(self, session: Session, access_cookie: Optional[str]) -> None:
        raise NotImplementedError

    def update_profile(self, session: Session, user: User, name: str) -> User:
        return store.update_user(session, user, name=name)

    def social_redirect(self, provider: str, redirect_to: str) -> SocialRedirect:
        raise ValidationFailed("Social sign-in needs the external identity provider")

    def complete_social(self, session: Session, code: str, code_verifier: Optional[str]) -> LoginResult:
        raise ValidationFailed("Social sign-in needs the external identity provider")


class LocalStrategy(IdentityStrategy):
    name = "local"

    def __init__(self, session_lifetime_days: int = 30):
        self.session_lifetime = timedelta(days=session_lifetime_days)

    def _start_session(self, session: Session, user: User) -> LoginResult:
        record = store.insert_local_session(
            session,
            LocalSession(
                user_id=user.id,
                token=generate_session_token(),
                expires_at=utcnow() + self.session_lifetime,
            ),
        )
        max_age = int(self.session_lifetime.total_seconds())
        return LoginResult(user=user, cookies=CookieGrant(access_token=record.token, access_max_age=max_age))

    def resolve(self, session, access_cookie, refresh_cookie):
        if not access_cookie:
            raise LoginRequired("No session cookie")
        record = store.find_local_session(session, access_cookie)
        if not record:
            raise LoginRequired("Session expired")
        user = store.find_user(session, record.user_id)
        if not user:
            raise LoginRequired("User not found for session")
        return Resolution(user=user)

    def login(self, session, email, password):
        email = _require_credentials(email, password)
        user = store.find_user_by_email(session, email)
        if not user or not verify_password(password, user.password_hash):
            raise Unauthorized("Invalid email or password")
        logger.info("Local login: %s", user.id)
        return self._start_session(session, user)

    def register(self, session, name, email, password):
        email = _require_credentials(email, password)
        if not name:
            raise ValidationFailed("All fields required")
        if store.find_user_by_email(session, email):
            raise Conflict("Email already registered", code="email_taken")
        try:
            user = store.insert_user(
                session,
                User(email=email, name=name, password_hash=hash_password(password), provider="email"),
            )
        except IntegrityError:
            session.rollback()
            raise Conflict("Email already registered", code="email_taken")
        logger.info("Local user created: %s", user.id)
        return self._start_session(session, user)

    def logout(self, session, access_cookie):
        if access_cookie:
            store.delete_local_session(session, access_cookie)


class IdpStrategy(IdentityStrategy):
    name = "idp"

    def __init__(self, client: IdpClient):
        self.client = client

    def _sync_user(self, session: Session, idp_user: IdpUser) -> User:
        """Mirror the IdP account into `users`, keyed on the provider id."""
        user = store.find_user(session, idp_user.id) or store.find_user_by_provider_id(session, idp_user.id)
        if user:
            return user

        if idp_user.email:
            user = store.find_user_by_email(session, idp_user.email)
            if user:
                logger.info("Linking IdP account %s to user %s", idp_user.id, user.id)
                return store.update_user(session, user, provider_id=idp_user.id)

        logger.info("Creating user for IdP account %s", idp_user.id)
        return store.insert_user(
            session,
            User(
                id=idp_user.id,
                email=idp_user.email or f"{idp_user.id}@users.invalid",
                name=idp_user.name or (idp_user.email.split("@")[0] if idp_user.email else None),
                provider=idp_user.provider,
                provider_id=idp_user.id,
            ),
        )

    @staticmethod
    def _grant(idp_session: IdpSession) -> CookieGrant:
        return CookieGrant(
            access_token=idp_session.access_token,
            access_max_age=IDP_ACCESS_MAX_AGE,
            refresh_token=idp_session.refresh_token or None,
            refresh_max_age=IDP_REFRESH_MAX_AGE if idp_session.refresh_token else None,
        )

    def resolve(self, session, access_cookie, refresh_cookie):
        if not access_cookie:
            raise LoginRequired("No session cookie")
        try:
            idp_user = self.client.get_user(access_cookie)
            if idp_user:
                return Resolution(user=self._sync_user(session, idp_user))

            if not refresh_cookie:
                raise LoginRequired("Access token rejected")

            refreshed = self.client.refresh_session(refresh_cookie)
        except IdpError as e:
            logger.error("IdP check failed: %s", e)
            raise LoginRequired(str(e)) from e

        if not refreshed:
            raise LoginRequired("Refresh token rejected")
        logger.info("Silent refresh for IdP account %s", refreshed.user.id)
        return Resolution(user=self._sync_user(session, refreshed.user), refreshed=self._grant(refreshed))

    def accept_tokens(self, session: Session, access_token: str, refresh_token: Optional[str]) -> LoginResult:
        """Adopt tokens the browser received from the IdP directly (implicit flow)."""
        try:
            idp_user = self.client.get_user(access_token)
        except IdpError as e:
            raise Internal(str(e)) from e
        if not idp_user:
            raise Unauthorized("Invalid token")
        cookies = CookieGrant(
            access_token=access_token,
            access_max_age=IDP_ACCESS_MAX_AGE,
            refresh_token=refresh_token or None,
            refresh_max_age=IDP_REFRESH_MAX_AGE if refresh_token else None,
        )
        return LoginResult(user=self._sync_user(session, idp_user), cookies=cookies)

    def social_redirect(self, provider, redirect_to):
        if provider not in SOCIAL_PROVIDERS:
            raise ValidationFailed(f"Unsupported sign-in provider: {provider}")
        verifier = generate_code_verifier()
        url = self.client.authorize_url(provider, redirect_to, code_challenge(verifier))
        return SocialRedirect(url=url, code_verifier=verifier)

    def complete_social(self, session, code, code_verifier):
        if not code_verifier:
            raise Unauthorized("Sign-in session expired, please try again")
        try:
            idp_session = self.client.exchange_code(code, code_verifier)
        except IdpError as e:
            if e.status_code and e.status_code < 500:
                raise Unauthorized(str(e)) from e
            raise Internal(str(e)) from e
        logger.info("Social sign-in for IdP account %s", idp_session.user.id)
        return LoginResult(user=self._sync_user(session, idp_session.user), cookies=self._grant(idp_session))

    def login(self, session, email, password):
        email = _require_credentials(email, password)
        try:
            idp_session = self.client.sign_in_with_password(email, password)
        except IdpError as e:
            if e.status_code and e.status_code < 500:
                raise Unauthorized(str(e)) from e
            raise Internal(str(e)) from e
        return LoginResult(user=self._sync_user(session, idp_session.user), cookies=self._grant(idp_session))

    def register(self, session, name, email, password):
        email = _require_credentials(email, password)
        if not name:
            raise ValidationFailed("All fields required")
        try:
            self.client.create_user(email, password, name)
        except IdpError as e:
            if e.status_code and e.status_code < 500:
                raise Conflict(str(e), code="registration_failed") from e
            raise Internal(str(e)) from e
        return self.login(session, email, password)

    def logout(self, session, access_cookie):
        if not access_cookie:
            return
        try:
            self.client.sign_out(access_cookie)
        except IdpError as e:
            logger.warning("IdP sign-out failed: %s", e)

    def update_profile(self, session, user, name):
        try:
            self.client.update_user_name(user.provider_id or user.id, name)
        except IdpError as e:
            raise Internal(str(e)) from e
        return store.update_user(session, user, name=name)


def build_strategy(settings: Settings) -> IdentityStrategy:
    mode = settings.resolved_auth_mode
    if mode == "idp":
        logger.info("Identity backend: external IdP at %s", settings.idp_url)
        return IdpStrategy(IdpClient.from_settings(settings))
    logger.info("Identity backend: local sessions")
    return LocalStrategy(settings.session_lifetime_days)
