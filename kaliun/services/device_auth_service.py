"""OAuth 2.0 Device Authorization Grant (RFC 8628).

A device without a browser asks for a device_code/user_code pair, shows the
user code, and polls the token endpoint. The user signs in on another
device, enters the code at /link, and the next poll gets the tokens.

    issued (pending) -> authorized -> exchanged
    issued -> expired

The poll interval is advisory; faster pollers are not slowed down.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from kaliun.config import settings
from kaliun.errors import (
    TOKEN_EXPIRED,
    TOKEN_INVALID,
    Internal,
    NotFound,
    OAuthError,
    Pending,
    Unauthorized,
    ValidationFailed,
)
from kaliun.models.device_auth import DeviceAuthorization
from kaliun.services import store
from kaliun.utils.clock import add_seconds, is_past, utcnow
from kaliun.utils.codes import generate_device_code, generate_user_code, normalize_user_code
from kaliun.utils.security import (
    DEVICE_CODE_LIFETIME,
    TOKEN_OAUTH_ACCESS,
    TOKEN_OAUTH_REFRESH,
    TokenFailure,
    TokenPair,
    issue_oauth_pair,
    verify,
)

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
REFRESH_TOKEN_GRANT = "refresh_token"
POLL_INTERVAL = 5  # seconds
USER_CODE_ATTEMPTS = 5


@dataclass
class AuthorizeOutcome:
    record: DeviceAuthorization
    already_authorized: bool


def verification_uri() -> str:
    return f"{settings.base_url.rstrip('/')}/link"


def request_code(session: Session, client_id: str, scope: Optional[str] = None) -> dict[str, Any]:
    if not client_id:
        raise ValidationFailed("client_id is required")

    for _ in range(USER_CODE_ATTEMPTS):
        record = DeviceAuthorization(
            device_code=generate_device_code(),
            user_code=generate_user_code(),
            client_id=client_id,
            scope=scope,
            expires_at=add_seconds(utcnow(), DEVICE_CODE_LIFETIME),
        )
        try:
            store.insert_device_authorization(session, record)
        except IntegrityError:
            session.rollback()
            continue
        break
    else:
        raise Internal("Could not allocate a unique user code")

    logger.info("Device code issued for client %s (%s)", client_id, record.user_code)
    return {
        "device_code": record.device_code,
        "user_code": record.user_code,
        "verification_uri": verification_uri(),
        "verification_uri_complete": f"{verification_uri()}?code={record.user_code}",
        "expires_in": DEVICE_CODE_LIFETIME,
        "interval": POLL_INTERVAL,
    }


def _live_record_for_user_code(session: Session, user_code: str) -> DeviceAuthorization:
    code = normalize_user_code(user_code or "")
    record = store.find_device_authorization_by_user_code(session, code)
    if not record:
        raise NotFound("Invalid or expired code")
    if is_past(record.expires_at):
        # Left in place for the next poll to purge
        raise NotFound("Code has expired", code="expired_token")
    return record


def lookup(session: Session, user_code: str) -> DeviceAuthorization:
    """Pending request behind a user code, for the confirmation page."""
    return _live_record_for_user_code(session, user_code)


def authorize(session: Session, user_code: str, user_id: str) -> AuthorizeOutcome:
    """Approve a pending request for `user_id`.

    Approving twice is not an error and never changes the bound user.
    """
    record = _live_record_for_user_code(session, user_code)
    if record.authorized:
        return AuthorizeOutcome(record, already_authorized=True)
    if record.denied:
        raise NotFound("Request was denied", code="access_denied")

    if not store.authorize_device_authorization(session, record.id, user_id):
        # Someone approved it between our read and write
        session.refresh(record)
        return AuthorizeOutcome(record, already_authorized=True)

    session.refresh(record)
    logger.info("Device code %s authorized by user %s", record.user_code, user_id)
    return AuthorizeOutcome(record, already_authorized=False)


def deny(session: Session, user_code: str) -> None:
    record = _live_record_for_user_code(session, user_code)
    if store.deny_device_authorization(session, record.id):
        logger.info("Device code %s denied", record.user_code)


def _token_response(pair: TokenPair, scope: Optional[str]) -> dict[str, Any]:
    return {
        "access_token": pair.access_token,
        "token_type": "Bearer",
        "expires_in": pair.access_lifetime,
        "refresh_token": pair.refresh_token,
        "scope": scope or "",
    }


def exchange_token(session: Session, device_code: str) -> dict[str, Any]:
    """One poll of the token endpoint.

    Raises `Pending` while waiting, OAuthError(expired_token / access_denied /
    invalid_grant) otherwise. Tokens are returned at most once per device code.
    """
    if not device_code:
        raise OAuthError("device_code is required", code="invalid_request")

    record = store.find_device_authorization(session, device_code)
    if not record:
        raise OAuthError("Unknown device code", code="invalid_grant")

    if is_past(record.expires_at):
        store.delete_device_authorization(session, record.id)
        logger.info("Device code %s expired", record.user_code)
        raise OAuthError("Device code expired", code="expired_token")

    if record.denied:
        store.delete_device_authorization(session, record.id)
        raise OAuthError("User denied the request", code="access_denied")

    if not record.authorized or not record.user_id:
        raise Pending("Authorization pending")

    user_id, scope, client_id = record.user_id, record.scope, record.client_id
    # Whoever deletes the row owns the exchange
    if not store.delete_device_authorization(session, record.id):
        raise OAuthError("Device code already used", code="invalid_grant")

    pair = issue_oauth_pair(user_id, scope=scope, client_id=client_id)
    logger.info("Device code exchanged for user %s", user_id)
    return _token_response(pair, scope)


def refresh(session: Session, refresh_token: str) -> dict[str, Any]:
    """New access + refresh pair for a valid OAuth refresh token."""
    if not refresh_token:
        raise OAuthError("refresh_token is required", code="invalid_request")

    result = verify(refresh_token, TOKEN_OAUTH_REFRESH)
    if isinstance(result, TokenFailure):
        raise OAuthError(f"Refresh token {result.reason}", code="invalid_grant")

    if not store.find_user(session, result.subject):
        raise OAuthError("Unknown subject", code="invalid_grant")

    scope = result.claims.get("scope")
    pair = issue_oauth_pair(result.subject, scope=scope, client_id=result.claims.get("client_id"))
    logger.info("OAuth token refreshed for user %s", result.subject)
    return _token_response(pair, scope)


def userinfo(session: Session, access_token: Optional[str]) -> dict[str, Any]:
    result = verify(access_token or "", TOKEN_OAUTH_ACCESS)
    if isinstance(result, TokenFailure):
        raise Unauthorized(
            "Access token expired" if result.expired else "Invalid access token",
            reason=TOKEN_EXPIRED if result.expired else TOKEN_INVALID,
        )
    user = store.find_user(session, result.subject)
    if not user:
        raise Unauthorized("Unknown subject", reason=TOKEN_INVALID)
    return {"sub": user.id, "email": user.email, "name": user.name or ""}
