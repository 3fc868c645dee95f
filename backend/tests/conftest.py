"""
Shared test fixtures.

Provides a FastAPI TestClient wired to:
  - a fresh in-memory SQLite schema per test
  - a recording email sender instead of SMTP
  - both rate limiters switched off (their own tests switch them back on)
"""

import os

# Must be set before app.core.config builds its settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["SMTP_ENABLED"] = "false"
# The /api limiter is switched on only by the tests that exercise it
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_MAX_REQUESTS"] = "20"

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import auth_rate_limit
from app.core.database import Base, SessionLocal, engine
from app.main import app
from app.models.user import User
from app.services.email_service import EmailDeliveryError, EmailService, get_email_service


class FakeEmailService(EmailService):
    """Records outgoing mail; set fail=True to simulate an SMTP outage"""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_email(self, to, subject, html, text=None):
        if self.fail:
            raise EmailDeliveryError("SMTP unavailable")
        self.sent.append({"to": to, "subject": subject, "text": text})

    async def send_verification_email(self, to, username, otp_code):
        await super().send_verification_email(to, username, otp_code)
        self.sent[-1]["otp"] = otp_code

    def last_otp(self, to):
        for message in reversed(self.sent):
            if message["to"] == to and "otp" in message:
                return message["otp"]
        return None


@pytest.fixture()
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def mailer():
    return FakeEmailService()


@pytest.fixture()
def client(db_session, mailer):
    async def _no_rate_limit():
        return None

    app.dependency_overrides[get_email_service] = lambda: mailer
    app.dependency_overrides[auth_rate_limit] = _no_rate_limit

    # No context manager: the lifespan disposes the engine, dropping the in-memory database
    yield TestClient(app, raise_server_exceptions=False)

    app.dependency_overrides.clear()


# ── Helpers ────────────────────────────────────────────────────────────────


def load_user(db_session, email):
    """Fresh read of a row the app changed through its own session"""
    db_session.expire_all()
    return db_session.query(User).filter(User.email == email).first()


def signup(client, username="alice01", email="a@x.com", password="secret1", **extra):
    return client.post(
        "/api/auth/signup",
        json={"username": username, "email": email, "password": password, **extra},
    )


def register_verified(client, mailer, username="alice01", email="a@x.com", password="secret1"):
    """Sign up, verify and log in; returns the bearer token"""
    assert signup(client, username, email, password).status_code == 201
    otp = mailer.last_otp(email)
    assert client.post("/api/auth/verify-email", json={"email": email, "otp": otp}).status_code == 200
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200
    return resp.json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
