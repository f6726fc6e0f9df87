"""OAuth 2.0 device authorization grant: /oauth/* and the /link page."""

import time
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import jwt
from fastapi.testclient import TestClient
from sqlmodel import Session

from conftest import sign_up
from kaliun.config import settings
from kaliun.database import engine
from kaliun.main import app
from kaliun.services import store
from kaliun.services.device_auth_service import DEVICE_CODE_GRANT, POLL_INTERVAL
from kaliun.utils.clock import utcnow
from kaliun.utils.security import DEVICE_CODE_LIFETIME, TOKEN_OAUTH_REFRESH


def _request_code(client, **extra):
    r = client.post("/oauth/device/code", data={"client_id": "kaliun-cli", **extra})
    assert r.status_code == 200, r.text
    return r.json()


def _poll(client, device_code):
    return client.post("/oauth/token", data={"grant_type": DEVICE_CODE_GRANT, "device_code": device_code})


def _link(client, user_code, action="approve"):
    r = client.post("/link", data={"code": user_code, "action": action})
    assert r.status_code == 303, r.text
    parts = urlsplit(r.headers["location"])
    assert parts.path == "/link"
    return {k: v[0] for k, v in parse_qs(parts.query).items()}


def _record(device_code):
    with Session(engine) as s:
        return store.find_device_authorization(s, device_code)


def _expire(device_code):
    with Session(engine) as s:
        record = store.find_device_authorization(s, device_code)
        record.expires_at = utcnow() - timedelta(seconds=1)
        s.add(record)
        s.commit()


def test_request_code_shape(client):
    body = _request_code(client, scope="openid profile")
    assert len(body["user_code"]) == 9 and body["user_code"][4] == "-"
    assert body["verification_uri"] == "http://testserver/link"
    assert body["verification_uri_complete"] == f"http://testserver/link?code={body['user_code']}"
    assert body["expires_in"] == DEVICE_CODE_LIFETIME == 900
    assert body["interval"] == POLL_INTERVAL

    record = _record(body["device_code"])
    assert record.scope == "openid profile"
    assert not record.authorized


def test_request_code_accepts_json_and_requires_client_id(client):
    r = client.post("/oauth/device/code", json={"client_id": "kaliun-cli"})
    assert r.status_code == 200

    r = client.post("/oauth/device/code", data={})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_device_flow_end_to_end(owner):
    code = _request_code(owner)

    r = _poll(owner, code["device_code"])
    assert r.status_code == 400
    assert r.json()["error"] == "authorization_pending"

    params = _link(owner, code["user_code"])
    assert params["success"] == "Device linked! You can return to your device."

    r = _poll(owner, code["device_code"])
    assert r.status_code == 200
    tokens = r.json()
    assert tokens["token_type"] == "Bearer"
    assert tokens["expires_in"] == 3600
    assert tokens["access_token"] and tokens["refresh_token"]

    # Tokens are handed out at most once
    r = _poll(owner, code["device_code"])
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"

    r = owner.get("/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert r.status_code == 200
    assert r.json()["email"] == "owner@example.com"
    assert r.json()["name"] == "Owner"


def test_link_page_shows_pending_request(owner):
    code = _request_code(owner)
    r = owner.get("/link", params={"code": code["user_code"].lower()})
    assert r.status_code == 200
    assert r.json()["user_code"] == code["user_code"]
    assert r.json()["client_id"] == "kaliun-cli"
    assert r.json()["authorized"] is False

    r = owner.get("/link")
    assert r.status_code == 200
    assert r.json()["page"] == "link"


def test_link_requires_login(client):
    code = _request_code(client)
    r = client.post("/link", data={"code": code["user_code"]})
    assert r.status_code == 303
    assert r.headers["location"] == "/login"
    assert not _record(code["device_code"]).authorized


def test_authorize_is_idempotent_and_keeps_first_user(owner):
    code = _request_code(owner)
    _link(owner, code["user_code"])
    first_user = _record(code["device_code"]).user_id

    params = _link(owner, code["user_code"])
    assert params["success"] == "Device already authorized"

    with TestClient(app, follow_redirects=False) as other:
        sign_up(other, email="other@example.com", name="Other")
        params = _link(other, code["user_code"])
    assert params["success"] == "Device already authorized"
    assert _record(code["device_code"]).user_id == first_user


def test_deny(owner):
    code = _request_code(owner)
    params = _link(owner, code["user_code"], action="deny")
    assert params["success"] == "Request denied"

    params = _link(owner, code["user_code"])
    assert "error" in params

    r = _poll(owner, code["device_code"])
    assert r.status_code == 400
    assert r.json()["error"] == "access_denied"

    r = _poll(owner, code["device_code"])
    assert r.json()["error"] == "invalid_grant"


def test_expired_code_is_expired_token_even_if_never_authorized(owner):
    code = _request_code(owner)
    _expire(code["device_code"])

    params = _link(owner, code["user_code"])
    assert params["error"] == "Code has expired"

    r = _poll(owner, code["device_code"])
    assert r.status_code == 400
    assert r.json()["error"] == "expired_token"

    # Purged by the poll above
    assert _record(code["device_code"]) is None
    r = _poll(owner, code["device_code"])
    assert r.json()["error"] == "invalid_grant"


def test_expired_after_authorize_is_expired_token(owner):
    code = _request_code(owner)
    _link(owner, code["user_code"])
    _expire(code["device_code"])

    r = _poll(owner, code["device_code"])
    assert r.json()["error"] == "expired_token"


def test_unknown_code_and_grant(client):
    r = _poll(client, "no-such-code")
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"

    r = client.post("/oauth/token", data={"grant_type": "password"})
    assert r.status_code == 400
    assert r.json()["error"] == "unsupported_grant_type"

    r = client.post("/oauth/token", data={})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_token_endpoint_accepts_json(owner):
    code = _request_code(owner)
    _link(owner, code["user_code"])
    r = owner.post("/oauth/token", json={"grant_type": DEVICE_CODE_GRANT, "device_code": code["device_code"]})
    assert r.status_code == 200
    assert r.json()["access_token"]


def _tokens_for(owner):
    code = _request_code(owner, scope="openid")
    _link(owner, code["user_code"])
    return _poll(owner, code["device_code"]).json()


def test_refresh_grant_issues_new_pair(owner):
    tokens = _tokens_for(owner)
    r = owner.post("/oauth/token", data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]})
    assert r.status_code == 200
    fresh = r.json()
    assert fresh["access_token"] != tokens["access_token"]
    assert fresh["refresh_token"] != tokens["refresh_token"]
    assert fresh["scope"] == "openid"

    r = owner.get("/oauth/userinfo", headers={"Authorization": f"Bearer {fresh['access_token']}"})
    assert r.status_code == 200


def test_refresh_grant_rejects_access_tokens(owner):
    tokens = _tokens_for(owner)
    r = owner.post("/oauth/token", data={"grant_type": "refresh_token", "refresh_token": tokens["access_token"]})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"


def test_refresh_grant_rejects_expired_refresh_token(owner):
    with Session(engine) as s:
        user_id = store.find_user_by_email(s, "owner@example.com").id
    now = int(time.time())
    expired = jwt.encode(
        {"sub": user_id, "type": TOKEN_OAUTH_REFRESH, "iat": now - 120, "exp": now - 60},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    r = owner.post("/oauth/token", data={"grant_type": "refresh_token", "refresh_token": expired})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"
    assert "access_token" not in r.json()


def test_userinfo_requires_valid_bearer(owner):
    tokens = _tokens_for(owner)
    assert owner.get("/oauth/userinfo").status_code == 401

    r = owner.get("/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert r.status_code == 401
    assert r.json()["code"] == "TOKEN_INVALID"
