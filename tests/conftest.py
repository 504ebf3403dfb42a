"""Test fixtures for the traceability service.

Provides:
- engine / session_factory / db: a fresh SQLite file database per test
- client: a FastAPI TestClient whose get_db dependency uses that database
- clock: a controllable clock for outbox backoff and expiry
- seeded profiles: u1 (FARMER), admin-1 (ADMIN), buyer-1 (BUYER)
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import app as app_module
from database import Base, make_engine
from models import Profile

PROFILES = [
    ("u1", "Amina Okafor", "FARMER", "https://example.org/a/u1.png"),
    ("admin-1", "Platform Admin", "ADMIN", None),
    ("buyer-1", "Kofi Mensah", "BUYER", None),
]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'trace.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    with factory() as s:
        for user_id, name, role, avatar in PROFILES:
            s.add(Profile(user_id=user_id, display_name=name, primary_role=role, avatar_url=avatar))
        s.commit()
    return factory


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app_module.app.dependency_overrides[app_module.get_db] = override_get_db
    yield TestClient(app_module.app)
    app_module.app.dependency_overrides.clear()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture()
def count_rows(session_factory):
    """Count rows of a model in a fresh session, optionally filtered by column."""
    def _count(model, **filters) -> int:
        with session_factory() as s:
            q = s.query(model)
            for key, value in filters.items():
                q = q.filter(getattr(model, key) == value)
            return q.count()
    return _count
