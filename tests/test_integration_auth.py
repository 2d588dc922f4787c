"""Integration tests for the customer authentication flow over HTTP.

Covers registration, phone verification, login, refresh rotation,
session listing, token validation and the error envelope.
"""

import pytest
from fastapi.testclient import TestClient

from venueauth import app as app_module

PASSWORD = "Secret123"


@pytest.fixture
def client(runtime):
    runtime.settings.expose_verification_codes = True
    return TestClient(app_module.app)


def _register(client, email="player@example.com", phone="01012345678"):
    response = client.post(
        "/v1/auth/customer/register",
        json={
            "email": email,
            "password": PASSWORD,
            "phone_number": phone,
            "full_name": "Player One",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _register_and_verify(client):
    data = _register(client)
    response = client.post(
        "/v1/auth/verify",
        json={"user_id": data["user_id"], "method": "phone", "code": data["verification_code"]},
    )
    assert response.status_code == 200, response.text
    return data["user_id"], response.json()["data"]


def _login(client, identifier="player@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/customer/login",
        json={"email_or_phone": identifier, "password": password, "device_name": "Pixel"},
    )


class TestRegistration:
    def test_register_returns_created(self, client):
        data = _register(client)
        assert data["requires_verification"] is True
        assert len(data["verification_code"]) == 6

    def test_duplicate_email_conflicts(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/customer/register",
            json={
                "email": "PLAYER@example.com",
                "password": PASSWORD,
                "phone_number": "01112345678",
                "full_name": "Player Two",
            },
        )
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Email already registered"

    def test_bad_phone_format_rejected(self, client):
        response = client.post(
            "/v1/auth/customer/register",
            json={
                "email": "player@example.com",
                "password": PASSWORD,
                "phone_number": "+1 555 0100",
                "full_name": "Player One",
            },
        )
        assert response.status_code == 422

    def test_unverified_account_cannot_login(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Account not verified"


class TestLoginAndRefresh:
    def test_verify_signs_in(self, client):
        _user_id, data = _register_and_verify(client)
        assert data["message"] == "Account verified successfully"
        assert data["tokens"]["token_type"] == "bearer"
        assert data["tokens"]["user_type"] == "customer"

    def test_login_by_phone_and_email(self, client):
        _register_and_verify(client)
        assert _login(client).status_code == 200
        assert _login(client, identifier="01012345678").status_code == 200

    def test_wrong_password(self, client):
        _register_and_verify(client)
        response = _login(client, password="Wrong1234")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_refresh_rotates_and_old_token_dies(self, client):
        _register_and_verify(client)
        tokens = _login(client).json()["data"]

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]
        assert new_tokens["refresh_token"] != tokens["refresh_token"]
        assert new_tokens["session_id"] == tokens["session_id"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "Invalid or expired refresh token"


class TestSessions:
    def test_list_marks_current_session(self, client):
        _register_and_verify(client)
        tokens = _login(client).json()["data"]
        response = client.get(
            "/v1/auth/sessions",
            headers={
                "Authorization": f"Bearer {tokens['access_token']}",
                "X-Refresh-Token": tokens["refresh_token"],
            },
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        current = [s for s in data["sessions"] if s["is_current"]]
        assert [s["id"] for s in current] == [tokens["session_id"]]
        assert current[0]["device_name"] == "Pixel"

    def test_logout_all_ends_every_session(self, client):
        _register_and_verify(client)
        tokens = _login(client).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}
        assert client.post("/v1/auth/logout-all", headers=headers).status_code == 200
        assert client.get("/v1/auth/sessions", headers=headers).status_code == 401
        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401


class TestTokenValidation:
    def test_invalid_token_is_not_an_http_error(self, client):
        response = client.post("/v1/auth/token/validate", json={"token": "garbage"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_valid"] is False
        assert data["message"] == "Invalid token format"

    def test_valid_token_with_details(self, client):
        user_id, data = _register_and_verify(client)
        response = client.post(
            "/v1/auth/token/validate",
            json={"token": data["tokens"]["access_token"], "include_user_details": True},
        )
        body = response.json()["data"]
        assert body["is_valid"] is True
        assert body["user"]["id"] == user_id


class TestEnvelopeAndHeaders:
    def test_unauthorized_envelope(self, client):
        response = client.get("/v1/auth/sessions", headers={"X-Request-ID": "req-42"})
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-42"
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["request_id"] == "req-42"
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_request_id_generated(self, client):
        response = client.post("/v1/auth/token/validate", json={"token": "garbage"})
        assert len(response.headers["X-Request-ID"]) == 36

    def test_login_rate_limited(self, client, runtime):
        runtime.settings.login_rate_limit_per_minute = 2
        for _ in range(2):
            assert _login(client, identifier="nobody@example.com").status_code == 401
        response = _login(client, identifier="nobody@example.com")
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["error"]["code"] == "rate_limited"

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
