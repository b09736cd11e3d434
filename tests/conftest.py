"""Shared fixtures: throwaway SQLite database, sessions, API client."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BILLING_DEFAULT_TAX", "0")
os.environ.setdefault("BILLING_DUE_DAYS", "30")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from hospital_billing.api.deps import get_db, get_event_bus
from hospital_billing.db.base import Base
from hospital_billing.db.session import make_engine
from hospital_billing.main import create_app
from hospital_billing.models import audit, billing  # noqa: F401
from hospital_billing.services.billing_events import make_event_bus


@pytest.fixture
def engine(tmp_path):
    # file-backed so the event bus can open its own sessions
    eng = make_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def bus(session_factory):
    return make_event_bus(session_factory)


@pytest.fixture
def client(session_factory, bus):
    app = create_app(with_db_init=False)

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    with TestClient(app) as c:
        yield c


ADMIN = {"X-User-Id": "1", "X-User-Role": "admin"}


@pytest.fixture
def admin_headers():
    return dict(ADMIN)
