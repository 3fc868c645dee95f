"""Tests for /api/users and /health."""

import asyncio
from types import SimpleNamespace

from sqlalchemy.exc import OperationalError

from app.api.dependencies import get_optional_user
from app.core.database import get_db
from app.core.security import create_access_token
from app.main import app
from conftest import bearer, load_user, register_verified


class TestPublicProfile:
    def test_anonymous_view_hides_private_fields(self, client, mailer):
        register_verified(client, mailer)
        resp = client.get("/api/users/alice01")
        assert resp.status_code == 200
        user = resp.json()["data"]["user"]
        assert user["username"] == "alice01"
        assert "email" not in user

    def test_owner_sees_private_fields(self, client, mailer):
        token = register_verified(client, mailer)
        user = client.get("/api/users/alice01", headers=bearer(token)).json()["data"]["user"]
        assert user["email"] == "a@x.com"
        assert user["emailVerified"] is True

    def test_other_user_does_not_see_private_fields(self, client, mailer):
        register_verified(client, mailer)
        token_b = register_verified(client, mailer, username="bob_02", email="b@x.com")
        user = client.get("/api/users/alice01", headers=bearer(token_b)).json()["data"]["user"]
        assert "email" not in user

    def test_bad_token_is_treated_as_anonymous(self, client, mailer):
        register_verified(client, mailer)
        resp = client.get("/api/users/alice01", headers=bearer("garbage"))
        assert resp.status_code == 200
        assert "email" not in resp.json()["data"]["user"]

    def test_unknown_username(self, client):
        assert client.get("/api/users/nobody").status_code == 404


class TestDietaryPreference:
    def test_update_own_preference(self, client, db_session, mailer):
        token = register_verified(client, mailer)
        user_id = load_user(db_session, "a@x.com").id

        resp = client.put(f"/api/users/{user_id}/dietary-preference?isVegetarian=true", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["data"]["isVegetarian"] is True
        assert load_user(db_session, "a@x.com").is_vegetarian is True

    def test_cannot_update_someone_else(self, client, db_session, mailer):
        register_verified(client, mailer)
        token_b = register_verified(client, mailer, username="bob_02", email="b@x.com")
        alice_id = load_user(db_session, "a@x.com").id

        resp = client.put(f"/api/users/{alice_id}/dietary-preference?isVegetarian=true", headers=bearer(token_b))
        assert resp.status_code == 403

    def test_requires_flag(self, client, db_session, mailer):
        token = register_verified(client, mailer)
        user_id = load_user(db_session, "a@x.com").id
        resp = client.put(f"/api/users/{user_id}/dietary-preference", headers=bearer(token))
        assert resp.status_code == 400


def test_health_reports_database(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["database"]["status"] == "healthy"


class _UnreachableSession:
    """Session whose every statement fails the way a dropped connection does"""

    def _fail(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("could not connect to server at db.internal:5432"))

    query = _fail
    execute = _fail

    def close(self):
        pass


def test_health_hides_database_error_details(client):
    app.dependency_overrides[get_db] = lambda: _UnreachableSession()

    resp = client.get("/health")
    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "warning"
    assert body["database"] == {"status": "unhealthy"}
    assert "db.internal" not in resp.text


def test_optional_auth_treats_store_failure_as_anonymous(client, db_session, mailer):
    register_verified(client, mailer)
    token = create_access_token(load_user(db_session, "a@x.com").id)
    request = SimpleNamespace(state=SimpleNamespace())

    user = asyncio.run(get_optional_user(request=request, token=token, db=_UnreachableSession()))
    assert user is None
    assert not hasattr(request.state, "user")
