# tokenbank/conftest.py
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from tokenbank.core import database
from tokenbank.core.auth import Actor, ROLE_ADMIN
from tokenbank.core.config import settings

TEST_ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="function", autouse=True)
def db_url(tmp_path, monkeypatch):
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so threads get real connections and the busy
    timeout serializes concurrent writers.
    """
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'tokenbank.db'}"
    database.init_engine(url)
    database.create_all_tables()
    yield url
    database.get_engine().dispose()


@pytest.fixture(scope="function", autouse=True)
def auth_settings(monkeypatch):
    """Header-based auth with a known legacy admin key."""
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    monkeypatch.setattr(settings, "JWT_SECRET", None)
    monkeypatch.setattr(settings, "ADMIN_KEY", TEST_ADMIN_KEY)
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")
    yield


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_user(now):
    """Create a user (with its FREE balance) and return the user id."""
    from tokenbank.features.users.service import get_or_create_user

    def _make(user_id=None, created_at=None):
        uid = user_id or f"user-{uuid4()}"
        get_or_create_user(uid, now=created_at or now)
        return uid

    return _make


@pytest.fixture
def operator():
    return Actor(user_id="operator-1", role=ROLE_ADMIN)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from tokenbank.main import app

    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": TEST_ADMIN_KEY}
