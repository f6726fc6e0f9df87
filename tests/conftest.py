"""Pytest configuration and fixtures."""

import os
import tempfile

# Point settings at a scratch directory before anything imports the app
_DATA_DIR = tempfile.mkdtemp(prefix="kaliun-test-")
os.environ["KALIUN_DATA_DIR"] = _DATA_DIR
os.environ["KALIUN_DB_PATH"] = os.path.join(_DATA_DIR, "test.db")
os.environ["KALIUN_AUTH_MODE"] = "local"
os.environ["KALIUN_JWT_SECRET"] = "test-secret-do-not-use-in-production"
os.environ["KALIUN_BASE_URL"] = "http://testserver"
os.environ["KALIUN_LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from kaliun.database import engine, init_db
from kaliun.main import app

API = "/api/v1/installations"


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables."""
    SQLModel.metadata.drop_all(engine)
    init_db()
    yield


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def client():
    with TestClient(app, follow_redirects=False) as c:
        yield c


def sign_up(client: TestClient, email: str = "owner@example.com", name: str = "Owner", password: str = "hunter22"):
    r = client.post("/auth/register", data={"name": name, "email": email, "password": password})
    assert r.status_code == 303, r.text
    assert r.headers["location"] == "/installations"
    return r


@pytest.fixture
def owner(client):
    """`client` signed in as a fresh local user."""
    sign_up(client)
    return client


def register_device(client: TestClient, install_id: str = "dev-1", **extra) -> str:
    r = client.post(f"{API}/register", json={"install_id": install_id, **extra})
    assert r.status_code in (200, 201), r.text
    return r.json()["claim_code"]


def claim_device(client: TestClient, claim_code: str, **form):
    data = {
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.com",
        "customer_address": "1 Main St",
    }
    data.update(form)
    return client.post(f"/claim/{claim_code}", data=data)


@pytest.fixture
def claimed_device(owner):
    """dev-1 registered and claimed by `owner`. Returns the claim code."""
    code = register_device(owner, "dev-1", hostname="kaliunbox", architecture="x86_64")
    r = claim_device(owner, code)
    assert r.status_code == 303, r.text
    assert r.headers["location"].startswith("/installations?success=")
    return code


@pytest.fixture
def bootstrapped_device(client, claimed_device):
    """dev-1 claimed and bootstrapped. Returns the auth block."""
    r = client.get(f"{API}/dev-1/config")
    assert r.status_code == 200, r.text
    return r.json()["auth"]
