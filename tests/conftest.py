"""
Pytest fixtures for the finance API.

Provides:
- an in-memory SQLite engine shared across threads (StaticPool)
- a mongomock collection standing in for the audit log store
- a TestClient around ``create_app`` with the lifespan running
- users of each role and their bearer headers
"""

import mongomock
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from main import create_app
from models import User
from security import hash_password, token_for

PASSWORD = "secret123"


@pytest.fixture(scope="session")
def password_hash():
    # bcrypt is slow; hash once for the whole run
    return hash_password(PASSWORD)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def log_collection():
    return mongomock.MongoClient()["finance_test"]["logs"]


@pytest.fixture
def app(engine, log_collection):
    return create_app(engine=engine, log_collection=log_collection)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user(client, engine, password_hash):
    """Insert a user straight into the store. Depends on ``client`` so tables exist."""

    def _make_user(name, role="regular", delegate_of=None, active=True):
        user = User(
            name=name.title(),
            email=f"{name}@finance.io",
            password_hash=password_hash,
            role=role,
            delegate_of=delegate_of,
            active=active,
        )
        with Session(engine) as session:
            session.add(user)
            session.commit()
            session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin")


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


@pytest.fixture
def viewer(make_user, alice):
    """Read-only account delegated to alice."""
    return make_user("val", role="viewer", delegate_of=alice.id)


def bearer(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def auth():
    return bearer


@pytest.fixture
def create(client, auth):
    """POST a resource as ``user`` and return the decoded body, asserting 201."""

    def _create(user, path, **payload):
        response = client.post(f"/api/{path}", json=payload, headers=auth(user))
        assert response.status_code == 201, response.text
        return response.json()

    return _create
