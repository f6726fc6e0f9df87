"""Installation lifecycle: register, bootstrap/resync, confirm, refresh, health.

States (see `Installation.state`):

    registered (unclaimed) -> claimed (bootstrap pending)
        -> bootstrapped (confirm pending) -> active

Bootstrap credentials are handed out anonymously only until the device
confirms receipt; after that every config fetch needs a bearer token.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from kaliun.config import settings
from kaliun.errors import (
    TOKEN_EXPIRED,
    TOKEN_INVALID,
    Conflict,
    Forbidden,
    Internal,
    NotFound,
    OAuthError,
    Unauthorized,
)
from kaliun.models.installation import Installation, InstallationLog
from kaliun.services import store
from kaliun.utils.clock import ensure_utc, isoformat, utcnow
from kaliun.utils.codes import generate_claim_code
from kaliun.utils.security import (
    TOKEN_ACCESS,
    TOKEN_REFRESH,
    TokenFailure,
    TokenPayload,
    issue_device_access_token,
    issue_device_pair,
    verify,
)

logger = logging.getLogger(__name__)

CLAIM_CODE_ATTEMPTS = 5


def register(
    session: Session,
    install_id: str,
    hostname: Optional[str] = None,
    architecture: Optional[str] = None,
    nixos_version: Optional[str] = None,
) -> tuple[Installation, bool]:
    """Idempotent: an existing install_id always gets its original claim code back.

    Returns (installation, created).
    """
    existing = store.find_installation(session, install_id)
    if existing:
        logger.info("Register existing: %s -> %s", install_id, existing.claim_code)
        return existing, False

    for _ in range(CLAIM_CODE_ATTEMPTS):
        installation = Installation(
            install_id=install_id,
            hostname=hostname or "kaliunbox",
            architecture=architecture,
            nixos_version=nixos_version,
            claim_code=generate_claim_code(),
        )
        try:
            store.insert_installation(session, installation)
        except IntegrityError:
            session.rollback()
            # Either the same device raced us, or the claim code collided
            existing = store.find_installation(session, install_id)
            if existing:
                return existing, False
            continue
        logger.info("Register new: %s -> %s", install_id, installation.claim_code)
        return installation, True

    raise Internal("Could not allocate a unique claim code")


def _customer_block(installation: Installation) -> dict[str, str]:
    return {
        "name": installation.customer_name or "",
        "email": installation.customer_email or "",
        "address": installation.customer_address or "",
    }


def _pangolin_block(installation: Installation) -> dict[str, Optional[str]]:
    if installation.pangolin_newt_id:
        return {
            "newt_id": installation.pangolin_newt_id,
            "newt_secret": installation.pangolin_newt_secret,
            "endpoint": installation.pangolin_endpoint,
            "url": installation.pangolin_url,
        }
    # Installer requires the block; real values are configured later
    return {
        "newt_id": f"newt_{installation.install_id[:8]}",
        "newt_secret": f"placeholder_{secrets.token_hex(8)}",
        "endpoint": settings.pangolin_default_endpoint,
        "url": None,
    }


def _verify_device_bearer(token: str, install_id: str) -> TokenPayload:
    result = verify(token, TOKEN_ACCESS)
    if isinstance(result, TokenFailure):
        raise Unauthorized(
            "Access token expired" if result.expired else "Invalid access token",
            reason=TOKEN_EXPIRED if result.expired else TOKEN_INVALID,
        )
    if result.installation_id != install_id:
        raise Unauthorized("Token does not belong to this installation", reason=TOKEN_INVALID)
    return result


def fetch_config(session: Session, install_id: str, bearer: Optional[str]) -> dict[str, Any]:
    """Pick resync or bootstrap for a config fetch.

    - unknown -> not_found; unclaimed -> not_claimed (bearer or not)
    - bearer valid for this installation -> resync
    - bearer present but not valid -> unauthorized
    - no bearer, already confirmed -> unauthorized
    - no bearer, not confirmed -> bootstrap
    """
    installation = store.find_installation(session, install_id)
    if not installation:
        raise NotFound("Unknown installation")
    if installation.claimed_at is None:
        raise NotFound("Installation has not been claimed yet", code="not_claimed")

    if bearer:
        _verify_device_bearer(bearer, install_id)
        return resync(installation)

    if installation.config_confirmed:
        raise Unauthorized("Bearer token required", reason=TOKEN_INVALID)

    return bootstrap(session, installation)


def resync(installation: Installation) -> dict[str, Any]:
    """Config for an already bootstrapped device. No new credentials."""
    logger.info("Config resync for: %s", installation.install_id)
    return {
        "customer": _customer_block(installation),
        "pangolin": _pangolin_block(installation),
    }


def bootstrap(session: Session, installation: Installation) -> dict[str, Any]:
    """Mint and store the device credentials, then hand them out.

    Repeating this before confirm simply re-mints; the previous pair stops
    working for refresh because the stored value is overwritten.
    """
    pair = issue_device_pair(installation.install_id)
    try:
        store.update_installation(
            session,
            installation,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Bootstrap persist failed for %s: %s", installation.install_id, e)
        raise Internal("Could not store credentials") from e

    logger.info("Config bootstrap for: %s", installation.install_id)
    return {
        "auth": {
            "access_token": pair.access_token,
            "refresh_token": pair.refresh_token,
            "access_expires_at": isoformat(pair.access_expires_at),
            "refresh_expires_at": isoformat(pair.refresh_expires_at),
        },
        "customer": _customer_block(installation),
        "pangolin": _pangolin_block(installation),
    }


def confirm_config(session: Session, install_id: str) -> None:
    """Device acknowledges its credentials. There is no way back."""
    installation = store.find_installation(session, install_id)
    if not installation:
        raise NotFound("Unknown installation")
    if installation.claimed_at is None:
        raise NotFound("Installation has not been claimed yet", code="not_claimed")
    if installation.refresh_token is None:
        # Nothing to acknowledge until bootstrap has handed out credentials
        raise Conflict("Credentials have not been issued yet", code="not_bootstrapped")
    if not installation.config_confirmed:
        store.update_installation(session, installation, config_confirmed=True)
    logger.info("Config confirmed: %s", install_id)


def refresh_access_token(session: Session, refresh_token: str) -> dict[str, Any]:
    """New access token for a valid refresh token. The refresh token itself is kept."""
    result = verify(refresh_token, TOKEN_REFRESH)
    if isinstance(result, TokenFailure):
        raise OAuthError(f"Refresh token {result.reason}", code="invalid_grant", status_code=401)

    installation = store.find_installation(session, result.installation_id or result.subject)
    if not installation or installation.refresh_token != refresh_token:
        # Superseded by a later bootstrap, or the installation is gone
        raise OAuthError("Refresh token revoked", code="invalid_grant", status_code=401)

    access_token, expires_at = issue_device_access_token(installation.install_id)
    store.update_installation(
        session,
        installation,
        access_token=access_token,
        access_expires_at=expires_at,
    )
    logger.info("Token refreshed: %s", installation.install_id)
    return {
        "access_token": access_token,
        "access_expires_at": isoformat(expires_at),
    }


def require_device(session: Session, install_id: str, bearer: Optional[str]) -> Installation:
    """Resolve a bearer token to the installation named in the path."""
    if not bearer:
        raise Unauthorized("Bearer token required", reason=TOKEN_INVALID)
    result = verify(bearer, TOKEN_ACCESS)
    if isinstance(result, TokenFailure):
        raise Unauthorized(
            "Access token expired" if result.expired else "Invalid access token",
            reason=TOKEN_EXPIRED if result.expired else TOKEN_INVALID,
        )
    if result.installation_id != install_id:
        raise Forbidden("Token does not belong to this installation")
    installation = store.find_installation(session, install_id)
    if not installation:
        raise NotFound("Unknown installation")
    return installation


def submit_health(session: Session, installation: Installation, payload: dict[str, Any]) -> None:
    """Store the raw report and bump last_health_at (the online/offline signal)."""
    store.insert_health_report(session, installation.id, payload)

    updates: dict[str, Any] = {
        "last_health_at": utcnow(),
        "last_health": payload,
    }
    system = payload.get("system")
    if isinstance(system, dict):
        if system.get("arch"):
            updates["architecture"] = str(system["arch"]).replace("-linux", "")
        if system.get("nixos_version"):
            updates["nixos_version"] = str(system["nixos_version"])

    store.update_installation(session, installation, **updates)
    logger.info("Health: %s", installation.install_id)


def submit_logs(
    session: Session,
    installation: Installation,
    logs: list[Any],
    service: Optional[str] = None,
    level: Optional[str] = None,
) -> int:
    entries = []
    for log in logs:
        if isinstance(log, str):
            entries.append(
                InstallationLog(
                    installation_id=installation.id,
                    service=service or "unknown",
                    level=level or "info",
                    message=log,
                )
            )
            continue
        entry = InstallationLog(
            installation_id=installation.id,
            service=log.service or service or "unknown",
            level=log.level or level or "info",
            message=log.message,
        )
        if log.timestamp is not None:
            entry.timestamp = log.timestamp
        entries.append(entry)

    store.insert_logs(session, entries)
    session.commit()
    logger.info("Logs: %s: %d entries", installation.install_id, len(entries))
    return len(entries)


def is_online(installation: Installation, now=None) -> bool:
    last = ensure_utc(installation.last_health_at)
    if last is None:
        return False
    return (now or utcnow()) - last < timedelta(seconds=settings.online_window_seconds)


def list_for_user(session: Session, user_id: str) -> Sequence[Installation]:
    return store.find_installations_for_user(session, user_id)


def recent_logs(session: Session, installation: Installation, limit: int = 50) -> Sequence[InstallationLog]:
    return store.recent_logs(session, installation.id, limit)
