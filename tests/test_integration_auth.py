"""Integration tests for the HTTP auth surface.

Tests the complete flow including:
- Organisation registration
- Login with password and lockout
- Token refresh and replay rejection
- Current-user lookup and logout
- Google sign-in with a stubbed identity provider
- Error envelopes and rate limiting
"""

import pytest
from fastapi.testclient import TestClient

from fakes import FakeIdentityClient
from thurayya import app as app_module
from thurayya.service.federation import GoogleIdentity
from thurayya.service.runtime import get_runtime
from thurayya.storage.models import UserStatus

PASSWORD = "Str0ngPass"

REGISTRATION = {
    "name": "Aisha",
    "email": "aisha@example.com",
    "password": PASSWORD,
    "tenant_name": "Aisha Pharmacy",
    "country": "SA",
    "currency": "SAR",
}


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def registered(client):
    response = client.post("/v1/auth/register", json=REGISTRATION)
    assert response.status_code == 201
    return response.json()["data"]


def _auth_header(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_returns_session(self, client):
        response = client.post("/v1/auth/register", json=REGISTRATION)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["user"]["role"] == "SuperAdmin"
        assert body["data"]["user"]["email"] == "aisha@example.com"
        assert body["request_id"]

    def test_register_lists_all_validation_errors(self, client):
        response = client.post("/v1/auth/register", json={"email": "bad"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert "Name is required" in error["details"]["errors"]
        assert "Invalid email format" in error["details"]["errors"]
        assert "Password is required" in error["details"]["errors"]

    def test_register_duplicate_email_conflicts(self, client, registered):
        response = client.post(
            "/v1/auth/register", json={**REGISTRATION, "email": "AISHA@example.com"}
        )

        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "Email already exists",
            "details": {"field": "email"},
        }


class TestLogin:
    def test_login_success(self, client, registered):
        response = client.post(
            "/v1/auth/login", json={"email": "aisha@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["data"]["access_token"]
        assert response.headers["X-RateLimit-Limit"] == "10"

    def test_wrong_password_is_unauthorized_with_reason(self, client, registered):
        response = client.post(
            "/v1/auth/login", json={"email": "aisha@example.com", "password": "Wrong1234"}
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "Invalid email or password. 4 attempt(s) remaining."
        assert error["details"] == {"reason": "invalid_credentials", "remaining_attempts": 4}

    def test_lockout_after_five_failures(self, client, registered):
        for _ in range(5):
            client.post(
                "/v1/auth/login", json={"email": "aisha@example.com", "password": "Wrong1234"}
            )

        response = client.post(
            "/v1/auth/login", json={"email": "aisha@example.com", "password": PASSWORD}
        )

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "account_locked"

    def test_suspended_account(self, client, registered):
        runtime = get_runtime()
        user = runtime.store.get_user_by_email("aisha@example.com")
        runtime.store.set_user_status(user.id, UserStatus.SUSPENDED)

        response = client.post(
            "/v1/auth/login", json={"email": "aisha@example.com", "password": PASSWORD}
        )

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "account_not_active"


class TestSessionLifecycle:
    def test_refresh_rotates_and_rejects_replay(self, client, registered):
        first = registered["refresh_token"]

        rotated = client.post("/v1/auth/refresh-token", json={"refresh_token": first})
        assert rotated.status_code == 200
        second = rotated.json()["data"]["refresh_token"]

        replay = client.post("/v1/auth/refresh-token", json={"refresh_token": first})
        assert replay.status_code == 401
        assert replay.json()["error"]["details"]["reason"] == "invalid_token"

        again = client.post("/v1/auth/refresh-token", json={"refresh_token": second})
        assert again.status_code == 200

    def test_me_returns_user_and_tenant(self, client, registered):
        response = client.get("/v1/auth/me", headers=_auth_header(registered["access_token"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "aisha@example.com"
        assert data["tenant"]["slug"] == "aisha-pharmacy"
        assert data["tenant"]["country"] == "SA"

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer not-a-jwt"}])
    def test_me_requires_valid_token(self, client, headers):
        response = client.get("/v1/auth/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_refresh(self, client, registered):
        response = client.post(
            "/v1/auth/logout", headers=_auth_header(registered["access_token"])
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"logged_out": True}
        refresh = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": registered["refresh_token"]}
        )
        assert refresh.status_code == 401


class TestCheckEmail:
    def test_check_email(self, client, registered):
        taken = client.post("/v1/auth/check-email", json={"email": "Aisha@Example.com"})
        free = client.post("/v1/auth/check-email", json={"email": "new@example.com"})
        invalid = client.post("/v1/auth/check-email", json={"email": "nope"})

        assert taken.json()["data"] == {"exists": True, "is_valid": True}
        assert free.json()["data"] == {"exists": False, "is_valid": True}
        assert invalid.json()["data"] == {"exists": False, "is_valid": False}

    def test_rate_limit_applies(self, client):
        limit = get_runtime().settings.auth_rate_limit_per_minute
        for _ in range(limit):
            assert client.post(
                "/v1/auth/check-email", json={"email": "a@example.com"}
            ).status_code == 200

        response = client.post("/v1/auth/check-email", json={"email": "a@example.com"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"


class TestGoogle:
    @pytest.fixture
    def identity(self):
        fake = FakeIdentityClient(
            GoogleIdentity(
                email="layla@example.com",
                subject="google-sub-layla",
                name="Layla Hassan",
                email_verified=True,
            )
        )
        get_runtime().auth.identity = fake
        return fake

    def test_google_sign_up_then_sign_in(self, client, identity):
        first = client.post("/v1/auth/google", json={"credential": "id-token"})
        second = client.post("/v1/auth/google", json={"credential": "id-token"})

        assert first.status_code == 200
        assert first.json()["data"]["is_new_user"] is True
        assert first.json()["data"]["tenant"]["name"] == "Layla Hassan's Organization"
        assert second.json()["data"]["is_new_user"] is False
        assert second.json()["data"]["user"]["id"] == first.json()["data"]["user"]["id"]

    def test_google_code_flow(self, client, identity):
        response = client.post(
            "/v1/auth/google-code", json={"code": "auth-code", "is_new_org": True}
        )

        assert response.status_code == 200
        assert identity.exchanged == ["auth-code"]

    def test_google_rejected_token(self, client, identity):
        identity.identity = None

        response = client.post("/v1/auth/google", json={"credential": "forged"})

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "invalid_provider_token"

    def test_google_code_unknown_org(self, client, identity):
        response = client.post(
            "/v1/auth/google-code", json={"code": "auth-code", "tenant_slug": "nowhere"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Organization not found"


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "trace-123"})

        assert response.headers["X-Request-ID"] == "trace-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
