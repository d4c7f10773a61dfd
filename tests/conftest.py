"""
Shared fixtures: a throwaway SQLite database per test, profile factories and
an API client wired to the same database.

Run with:  python -m pytest tests/ -v
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from db import build_engine, create_db_and_tables, get_session
from main import app
from models import Donor, Receiver, Role, User
from schemas import Caller


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'foodbridge.db'}", echo=False)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


def _make_user(session: Session, role: Role, name: str) -> Caller:
    user = User(
        email=f"{name.lower().replace(' ', '.')}@example.org",
        name=name,
        role=role,
        password_hash="not-used",
    )
    session.add(user)
    session.flush()
    profile = Donor if role == Role.DONOR else Receiver
    session.add(profile(user_id=user.id))
    session.commit()
    return Caller(id=user.id, role=role)


@pytest.fixture
def make_donor(session):
    def factory(name: str = "Dana Donor") -> Caller:
        return _make_user(session, Role.DONOR, name)

    return factory


@pytest.fixture
def make_receiver(session):
    def factory(name: str = "Food Bank") -> Caller:
        return _make_user(session, Role.RECEIVER, name)

    return factory


@pytest.fixture
def donation_fields():
    def factory(**overrides) -> dict:
        fields = {
            "title": "Bread",
            "food_type": "Bakery",
            "quantity": 5,
            "pickup_address": "12 Baker Street",
            "pickup_date": "2030-01-01T10:00:00",
        }
        fields.update(overrides)
        return fields

    return factory


@pytest.fixture
def client(engine):
    def _get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session
    # not used as a context manager: the startup hook targets the real database
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    """Register through the API and return bearer headers."""

    def factory(role: str, name: str) -> dict:
        resp = client.post(
            "/auth/register",
            json={
                "email": f"{name.lower().replace(' ', '.')}@example.org",
                "password": "secret123",
                "name": name,
                "role": role,
            },
        )
        assert resp.status_code == 201, resp.text
        token = resp.json()["data"]["token"]
        return {"Authorization": f"Bearer {token}"}

    return factory
