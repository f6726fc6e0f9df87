"""Claiming installations: human flow and the one-winner guarantee."""

import threading
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from conftest import claim_device, register_device, sign_up
from kaliun.database import engine
from kaliun.errors import Conflict, NotFound, ValidationFailed
from kaliun.main import app
from kaliun.models.installation import InstallationUser
from kaliun.models.user import User
from kaliun.services import claim_service, installation_service, store


def _redirect(response):
    assert response.status_code == 303, response.text
    parts = urlsplit(response.headers["location"])
    return parts.path, {k: v[0] for k, v in parse_qs(parts.query).items()}


def _owner_of(install_id):
    with Session(engine) as s:
        return store.find_installation(s, install_id).claimed_by


def _user_id(email):
    with Session(engine) as s:
        return store.find_user_by_email(s, email).id


def test_claim_binds_owner_and_customer(owner):
    code = register_device(owner, "dev-1")
    path, params = _redirect(claim_device(owner, code))
    assert path == "/installations"
    assert params["success"] == "Device claimed!"

    with Session(engine) as s:
        inst = store.find_installation(s, "dev-1")
        assert inst.claimed_by == _user_id("owner@example.com")
        assert inst.claimed_at is not None
        assert inst.customer_name == "Jane Doe"
        links = s.exec(select(InstallationUser).where(InstallationUser.installation_id == inst.id)).all()
        assert [(link.user_id, link.role) for link in links] == [(inst.claimed_by, "home_owner")]


def test_second_claim_conflicts(owner):
    code = register_device(owner, "dev-1")
    _redirect(claim_device(owner, code))
    first_owner = _owner_of("dev-1")

    with TestClient(app, follow_redirects=False) as other:
        sign_up(other, email="intruder@example.com", name="Intruder")
        path, params = _redirect(claim_device(other, code, customer_name="Mallory"))

    assert path == "/claim"
    assert params["error"] == "Already claimed"
    assert _owner_of("dev-1") == first_owner


def test_claim_code_is_case_insensitive(owner):
    code = register_device(owner, "dev-1")
    path, _ = _redirect(claim_device(owner, code.lower()))
    assert path == "/installations"


def test_claim_rejects_bad_codes(owner):
    _, params = _redirect(claim_device(owner, "ABC"))
    assert params["error"] == "Claim codes are 6 characters long"

    _, params = _redirect(claim_device(owner, "ZZZZZZ"))
    assert params["error"] == "Invalid code"


def test_claim_requires_customer_details(owner):
    code = register_device(owner, "dev-1")
    path, params = _redirect(claim_device(owner, code, customer_name="", customer_email=""))
    assert path == "/claim"
    assert "required" in params["error"]
    assert _owner_of("dev-1") is None


def test_claim_requires_login(client):
    code = register_device(client, "dev-1")
    path, _ = _redirect(claim_device(client, code))
    assert path == "/login"
    assert _owner_of("dev-1") is None


def test_preview(owner):
    code = register_device(owner, "dev-1", hostname="kitchen", architecture="aarch64")
    r = owner.get(f"/claim/{code}")
    assert r.status_code == 200
    assert r.json() == {
        "claim_code": code,
        "install_id": "dev-1",
        "hostname": "kitchen",
        "architecture": "aarch64",
    }

    claim_device(owner, code)
    path, params = _redirect(owner.get(f"/claim/{code}"))
    assert path == "/claim"
    assert params["error"] == "Already claimed"


def test_code_entry_redirects_to_claim_page(owner):
    path, _ = _redirect(owner.post("/claim", data={"code": " abc234 "}))
    assert path == "/claim/ABC234"

    path, params = _redirect(owner.post("/claim", data={"code": ""}))
    assert path == "/claim"
    assert params["error"]


# --- Service level ---

def _make_user(session, email):
    return store.insert_user(session, User(email=email, name=email.split("@")[0]))


def test_service_claim_errors(session):
    installation, _ = installation_service.register(session, "dev-1")
    user = _make_user(session, "a@example.com")
    customer = claim_service.CustomerInfo(name="A", email="a@example.com")

    with pytest.raises(ValidationFailed):
        claim_service.claim(session, "short", user.id, customer)
    with pytest.raises(NotFound):
        claim_service.claim(session, "ZZZZZZ", user.id, customer)

    claim_service.claim(session, installation.claim_code, user.id, customer)
    with pytest.raises(Conflict) as exc:
        claim_service.claim(session, installation.claim_code, user.id, customer)
    assert exc.value.code == "already_claimed"


def test_concurrent_claims_have_exactly_one_winner(session):
    installation, _ = installation_service.register(session, "dev-1")
    code = installation.claim_code
    users = [_make_user(session, f"user{i}@example.com").id for i in range(6)]

    barrier = threading.Barrier(len(users))
    outcomes = []
    lock = threading.Lock()

    def attempt(user_id):
        with Session(engine) as s:
            barrier.wait()
            try:
                claim_service.claim(s, code, user_id, claim_service.CustomerInfo(name="N", email="n@example.com"))
                result = ("won", user_id)
            except Conflict:
                result = ("conflict", user_id)
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(uid,)) for uid in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    winners = [uid for outcome, uid in outcomes if outcome == "won"]
    assert len(outcomes) == len(users)
    assert len(winners) == 1
    assert _owner_of("dev-1") == winners[0]
