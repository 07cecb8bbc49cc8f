"""Pytest configuration and fixtures for test suite."""

import os
import tempfile

import pytest

# Set test environment BEFORE any repaircrm import; settings and the engine
# are built at import time.
_TMP_DIR = tempfile.mkdtemp(prefix="repaircrm-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ENABLE_WHATSAPP"] = "false"
os.environ["ENABLE_SMS"] = "true"
os.environ["SMS_API_URL"] = ""
os.environ["STRICT_STATUS_TRANSITIONS"] = "true"
os.environ["TZ_DEFAULT"] = "UTC"

from fastapi.testclient import TestClient  # noqa: E402

from repaircrm.auth.security import get_password_hash  # noqa: E402
from repaircrm.db import Base, SessionLocal, engine  # noqa: E402
from repaircrm.main import app  # noqa: E402
from repaircrm.models.models import User  # noqa: E402
from repaircrm.services import notifications  # noqa: E402

DEFAULT_PASSWORD = "Secret123"


@pytest.fixture(autouse=True)
def reset_database():
    """Fresh schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def sent_messages(monkeypatch):
    """Capture outbound notifications instead of calling any gateway."""
    sent = []

    def _send_text(self, to, body):
        sent.append({"to": to, "body": body})
        return "sms", None

    monkeypatch.setattr(notifications.NotificationService, "send_text", _send_text)
    return sent


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(username=None, role="technician", **kwargs):
        counter["n"] += 1
        user = User(
            username=username or f"user{counter['n']}",
            password_hash=get_password_hash(kwargs.pop("password", DEFAULT_PASSWORD)),
            role=role,
            name=kwargs.pop("name", None),
            mobile=kwargs.pop("mobile", f"98765{counter['n']:05d}"),
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin", name="Shop Admin")


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c
