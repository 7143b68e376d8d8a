import os
import sys
from datetime import datetime, timedelta

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from chorehub import db
from chorehub import models  # ensure models are registered with metadata
from chorehub.auth import hash_password
from chorehub.claims import ClaimEngine
from chorehub.main import app
from chorehub.models import Household, HouseholdMember, MemberRole, User


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

def override_get_session():
    with Session(test_engine) as session:
        yield session


def reset_database():
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)


db.engine = test_engine
import chorehub.main as main
app.dependency_overrides[db.get_session] = override_get_session

START = datetime(2025, 1, 15, 9, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def setup_db():
    reset_database()
    yield


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture(autouse=True)
def engine(clock, monkeypatch):
    claim_engine = ClaimEngine(clock=clock)
    monkeypatch.setattr(main, "claim_engine", claim_engine)
    return claim_engine


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_client():
    def _make():
        return TestClient(app)
    return _make


@pytest.fixture
def session():
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def make_user(session):
    def _make(email: str, display_name: str = None, household_id: int = None, role=MemberRole.parent):
        user = User(
            email=email,
            display_name=display_name or email.split("@")[0].title(),
            hashed_password=hash_password("pw"),
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        if household_id is not None:
            session.add(HouseholdMember(household_id=household_id, user_id=user.id, role=role))
            session.commit()
        return user
    return _make


@pytest.fixture
def household(session):
    home = Household(name="Home")
    session.add(home)
    session.commit()
    session.refresh(home)
    return home
