"""Bearer tokens and password hashing."""

import time

import jwt

from kaliun.config import settings
from kaliun.utils.security import (
    TOKEN_ACCESS,
    TOKEN_OAUTH_ACCESS,
    TOKEN_REFRESH,
    TokenFailure,
    TokenPayload,
    hash_password,
    issue_device_pair,
    issue_oauth_pair,
    verify,
    verify_password,
)


def _expired(claims: dict) -> str:
    now = int(time.time())
    return jwt.encode(
        {**claims, "iat": now - 120, "exp": now - 60},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def test_device_pair_round_trip():
    pair = issue_device_pair("dev-1")
    access = verify(pair.access_token, TOKEN_ACCESS)
    assert isinstance(access, TokenPayload)
    assert access.subject == "dev-1"
    assert access.installation_id == "dev-1"
    assert isinstance(verify(pair.refresh_token, TOKEN_REFRESH), TokenPayload)
    assert pair.refresh_expires_at > pair.access_expires_at


def test_wrong_class_is_invalid():
    pair = issue_device_pair("dev-1")
    result = verify(pair.refresh_token, TOKEN_ACCESS)
    assert isinstance(result, TokenFailure)
    assert result.reason == "invalid"

    oauth = issue_oauth_pair("usr_1")
    assert isinstance(verify(oauth.access_token, TOKEN_ACCESS), TokenFailure)
    assert isinstance(verify(oauth.access_token, TOKEN_OAUTH_ACCESS), TokenPayload)


def test_expired_and_invalid_are_distinguished():
    expired = verify(_expired({"sub": "dev-1", "type": TOKEN_ACCESS}), TOKEN_ACCESS)
    assert isinstance(expired, TokenFailure) and expired.expired

    forged = jwt.encode(
        {"sub": "dev-1", "type": TOKEN_ACCESS, "exp": int(time.time()) + 60},
        "some-other-secret-of-sufficient-length",
    )
    result = verify(forged, TOKEN_ACCESS)
    assert isinstance(result, TokenFailure) and not result.expired

    for junk in ("", "not-a-jwt", "a.b.c"):
        assert verify(junk) == TokenFailure("invalid")


def test_missing_required_claims_is_invalid():
    token = jwt.encode({"sub": "dev-1", "exp": int(time.time()) + 60}, settings.jwt_secret)
    assert verify(token) == TokenFailure("invalid")


def test_tokens_issued_together_differ():
    assert issue_device_pair("dev-1").access_token != issue_device_pair("dev-1").access_token


def test_password_hashing():
    hashed = hash_password("hunter22")
    assert hashed != "hunter22"
    assert verify_password("hunter22", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("hunter22", None)
