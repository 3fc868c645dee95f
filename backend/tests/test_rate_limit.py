"""Tests for the per-IP limiters: /api as a whole and signup/login."""

import time

import pytest
from limits.storage import MemoryStorage

from app.api.dependencies import auth_rate_limit, get_auth_rate_limiter
from app.core.config import settings
from app.main import app
from app.services.rate_limiter import AuthRateLimiter, limiter


class TestAuthRateLimiter:
    def test_allows_up_to_max_attempts_per_window(self):
        auth_limiter = AuthRateLimiter(max_attempts=5, window_seconds=900)

        decisions = [auth_limiter.hit("1.2.3.4") for _ in range(6)]
        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert decisions[0].remaining == 4
        assert decisions[-1].remaining == 0
        assert 0 < decisions[-1].retry_after <= 900

    def test_keys_are_independent(self):
        auth_limiter = AuthRateLimiter(max_attempts=1, window_seconds=900)
        assert auth_limiter.hit("1.1.1.1").allowed
        assert auth_limiter.hit("2.2.2.2").allowed
        assert not auth_limiter.hit("1.1.1.1").allowed

    def test_window_resets_after_expiry(self):
        auth_limiter = AuthRateLimiter(max_attempts=2, window_seconds=1)
        for _ in range(2):
            assert auth_limiter.hit("ip").allowed
        assert not auth_limiter.hit("ip").allowed

        time.sleep(1.1)
        assert auth_limiter.hit("ip").allowed

    def test_instances_on_one_storage_share_the_budget(self):
        storage = MemoryStorage()
        first = AuthRateLimiter(max_attempts=2, window_seconds=900, storage=storage)
        second = AuthRateLimiter(max_attempts=2, window_seconds=900, storage=storage)

        assert first.hit("ip").allowed
        assert second.hit("ip").allowed
        assert not first.hit("ip").allowed

    def test_reset_clears_counters(self):
        auth_limiter = AuthRateLimiter(max_attempts=1, window_seconds=900)
        auth_limiter.hit("ip")
        assert not auth_limiter.hit("ip").allowed

        auth_limiter.reset()
        assert auth_limiter.hit("ip").allowed


class TestAuthEndpointsLimited:
    @pytest.fixture()
    def limited_client(self, client):
        auth_limiter = AuthRateLimiter(max_attempts=5, window_seconds=900)
        app.dependency_overrides.pop(auth_rate_limit, None)
        app.dependency_overrides[get_auth_rate_limiter] = lambda: auth_limiter
        return client

    def test_sixth_login_attempt_is_rejected(self, limited_client):
        for i in range(5):
            resp = limited_client.post("/api/auth/login", json={"email": "a@x.com", "password": "nope12"})
            assert resp.status_code == 401, f"Request {i + 1} should reach the handler"

        resp = limited_client.post("/api/auth/login", json={"email": "a@x.com", "password": "nope12"})
        assert resp.status_code == 429
        body = resp.json()
        assert body["message"] == "Too many authentication attempts, please try again later"
        assert body["data"]["retryAfter"] > 0

    def test_signup_and_login_share_the_budget(self, limited_client):
        for i in range(5):
            limited_client.post(
                "/api/auth/signup",
                json={"username": f"user_{i}", "email": f"u{i}@x.com", "password": "secret1"},
            )
        resp = limited_client.post("/api/auth/login", json={"email": "u0@x.com", "password": "secret1"})
        assert resp.status_code == 429

    def test_verification_endpoints_are_not_ip_limited(self, limited_client):
        for _ in range(7):
            resp = limited_client.post("/api/auth/verify-email", json={"email": "a@x.com", "otp": "123456"})
            assert resp.status_code == 400


class TestApiRateLimit:
    @pytest.fixture()
    def api_limited_client(self, client):
        """Client with the /api limiter on (conftest leaves it off)"""
        limiter.enabled = True
        # Reset in-memory state so previous tests don't pollute counts
        limiter.reset()
        yield client
        limiter.enabled = False
        limiter.reset()

    def test_requests_past_the_limit_are_rejected(self, api_limited_client):
        for i in range(settings.RATE_LIMIT_MAX_REQUESTS):
            resp = api_limited_client.get("/api/users/nobody")
            assert resp.status_code == 404, f"Request {i + 1} should reach the handler"

        resp = api_limited_client.get("/api/users/nobody")
        assert resp.status_code == 429
        assert resp.json() == {
            "status": "error",
            "message": "Too many requests from this IP, please try again later.",
        }

    def test_health_is_not_limited(self, api_limited_client):
        for _ in range(settings.RATE_LIMIT_MAX_REQUESTS + 5):
            assert api_limited_client.get("/health").status_code == 200
