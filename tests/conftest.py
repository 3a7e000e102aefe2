import os

# Point the app at an in-memory database and a fixed default zone before it is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEFAULT_TIMEZONE"] = "UTC"

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from app.auth import create_access_token
from app.database import get_session
from app.main import app
from app.models import challenge_event, device, period_outcome  # noqa: F401
from app.models.challenge import Challenge
from app.models.challenge_member import ChallengeMember
from app.routers.challenges import get_now
from app.services.ledger import build_check_in
from app.services.period_clock import ensure_utc


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_challenge(session):
    def _make(members=("alice",), joined_at=None, **fields):
        fields.setdefault("title", "Test challenge")
        # Stored datetimes are naive UTC
        if "created_at" in fields:
            fields["created_at"] = ensure_utc(fields["created_at"])
        challenge = Challenge(**fields)
        session.add(challenge)
        session.commit()
        session.refresh(challenge)
        for user_id in members:
            session.add(ChallengeMember(
                challenge_id=challenge.challenge_id,
                user_id=user_id,
                joined_at=ensure_utc(joined_at or challenge.created_at),
            ))
        session.commit()
        return challenge
    return _make


@pytest.fixture
def add_check_in(session):
    def _add(challenge, user_id, moment, value=None):
        check_in = build_check_in(challenge, user_id, moment, value=value)
        session.add(check_in)
        session.commit()
        session.refresh(check_in)
        return check_in
    return _add


class Clock:
    def __init__(self, now):
        self.now = now


@pytest.fixture
def clock():
    return Clock(datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def client(engine, clock):
    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_now] = lambda: clock.now
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user_id):
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}
    return _headers
