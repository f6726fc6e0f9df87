"""Security utilities: signed bearer tokens, password hashing, PKCE."""

import base64
import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

import bcrypt
import jwt

from kaliun.config import settings
from kaliun.utils.clock import add_seconds, utcnow

# --- Token classes ---

TOKEN_ACCESS = "access"
TOKEN_REFRESH = "refresh"
TOKEN_OAUTH_ACCESS = "oauth_access"
TOKEN_OAUTH_REFRESH = "oauth_refresh"

# --- Lifetimes (seconds) ---

ACCESS_TOKEN_LIFETIME = 7 * 24 * 60 * 60  # 7 days
REFRESH_TOKEN_LIFETIME = 90 * 24 * 60 * 60  # 90 days
DEVICE_CODE_LIFETIME = 15 * 60  # 15 minutes
OAUTH_ACCESS_TOKEN_LIFETIME = 60 * 60  # 1 hour
OAUTH_REFRESH_TOKEN_LIFETIME = 30 * 24 * 60 * 60  # 30 days


# --- Password Hashing ---

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


# --- Bearer Tokens ---

@dataclass(frozen=True)
class TokenPayload:
    subject: str
    token_type: str
    expires_at: datetime
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def installation_id(self) -> Optional[str]:
        return self.claims.get("installation_id")


@dataclass(frozen=True)
class TokenFailure:
    reason: str  # 'expired' | 'invalid'

    @property
    def expired(self) -> bool:
        return self.reason == "expired"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_lifetime: int


def issue(payload: dict[str, Any], lifetime_seconds: int) -> str:
    """Sign `payload` with the process-wide secret, expiring `lifetime_seconds` from now."""
    now = utcnow()
    claims = dict(payload)
    claims["iat"] = int(now.timestamp())
    claims["exp"] = int(add_seconds(now, lifetime_seconds).timestamp())
    claims["jti"] = secrets.token_hex(8)
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify(token: str, expected_type: Optional[str] = None) -> Union[TokenPayload, TokenFailure]:
    """Check signature, expiry and (optionally) class. Never raises on bad input."""
    if not token:
        return TokenFailure("invalid")
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub", "type"]},
        )
    except jwt.ExpiredSignatureError:
        return TokenFailure("expired")
    except jwt.PyJWTError:
        return TokenFailure("invalid")

    if expected_type is not None and claims.get("type") != expected_type:
        return TokenFailure("invalid")

    return TokenPayload(
        subject=str(claims["sub"]),
        token_type=claims["type"],
        expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        claims=claims,
    )


def issue_device_access_token(install_id: str) -> tuple[str, datetime]:
    token = issue(
        {"sub": install_id, "installation_id": install_id, "type": TOKEN_ACCESS},
        ACCESS_TOKEN_LIFETIME,
    )
    return token, add_seconds(utcnow(), ACCESS_TOKEN_LIFETIME)


def issue_device_pair(install_id: str) -> TokenPair:
    now = utcnow()
    access = issue(
        {"sub": install_id, "installation_id": install_id, "type": TOKEN_ACCESS},
        ACCESS_TOKEN_LIFETIME,
    )
    refresh = issue(
        {"sub": install_id, "installation_id": install_id, "type": TOKEN_REFRESH},
        REFRESH_TOKEN_LIFETIME,
    )
    return TokenPair(
        access_token=access,
        refresh_token=refresh,
        access_expires_at=add_seconds(now, ACCESS_TOKEN_LIFETIME),
        refresh_expires_at=add_seconds(now, REFRESH_TOKEN_LIFETIME),
        access_lifetime=ACCESS_TOKEN_LIFETIME,
    )


def issue_oauth_pair(user_id: str, scope: Optional[str] = None, client_id: Optional[str] = None) -> TokenPair:
    now = utcnow()
    base: dict[str, Any] = {"sub": user_id}
    if scope:
        base["scope"] = scope
    if client_id:
        base["client_id"] = client_id
    access = issue({**base, "type": TOKEN_OAUTH_ACCESS}, OAUTH_ACCESS_TOKEN_LIFETIME)
    refresh = issue({**base, "type": TOKEN_OAUTH_REFRESH}, OAUTH_REFRESH_TOKEN_LIFETIME)
    return TokenPair(
        access_token=access,
        refresh_token=refresh,
        access_expires_at=add_seconds(now, OAUTH_ACCESS_TOKEN_LIFETIME),
        refresh_expires_at=add_seconds(now, OAUTH_REFRESH_TOKEN_LIFETIME),
        access_lifetime=OAUTH_ACCESS_TOKEN_LIFETIME,
    )


# --- Session tokens ---

def generate_session_token() -> str:
    return secrets.token_urlsafe(48)


# --- PKCE (RFC 7636) for social sign-in ---

def generate_code_verifier() -> str:
    return secrets.token_urlsafe(48)


def code_challenge(verifier: str) -> str:
    """S256 challenge: unpadded base64url of the verifier's SHA-256."""
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
