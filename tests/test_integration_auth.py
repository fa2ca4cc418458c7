"""End-to-end tests for the HTTP auth surface.

Covers registration, login, token refresh and rotation, logout, email
verification, password reset and two-factor enrollment.
"""

import time

import pytest

from huddle.service.runtime import get_runtime
from huddle.service.two_factor import generate_totp

EMAIL = "testuser@example.com"
USERNAME = "testuser"
PASSWORD = "TestPassword123!"


def _register(client, email=EMAIL, username=USERNAME, password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "username": username,
            "password": password,
            "date_of_birth": "1995-06-15",
        },
    )


def _login(client, email=EMAIL, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def logged_in(client):
    assert _register(client).status_code == 201
    response = _login(client)
    assert response.status_code == 200
    return response.json()["data"]


class TestRegistration:
    def test_register_returns_account(self, client):
        response = _register(client)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["username"] == USERNAME
        assert data["email"] == EMAIL
        assert len(data["discriminator"]) == 4
        assert data["verification_email_sent"] is True
        assert "password" not in data

    def test_duplicate_email(self, client):
        _register(client)
        response = _register(client, username="someoneelse")
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["details"] == {"field": "email"}

    def test_duplicate_username(self, client):
        _register(client)
        response = _register(client, email="other@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "username"}

    @pytest.mark.parametrize(
        "overrides",
        [
            {"password": "short"},
            {"username": "x"},
            {"username": "y" * 33},
            {"email": "invalid-email"},
            {"date_of_birth": "not-a-date"},
        ],
    )
    def test_input_validation(self, client, overrides):
        body = {
            "email": EMAIL,
            "username": USERNAME,
            "password": PASSWORD,
            "date_of_birth": "1995-06-15",
            **overrides,
        }
        response = client.post("/v1/auth/register", json=body)
        assert response.status_code == 422


class TestLogin:
    def test_login_returns_tokens_and_user(self, client, logged_in):
        assert logged_in["token_type"] == "bearer"
        assert logged_in["user"]["username"] == USERNAME
        assert logged_in["user"]["email_verified"] is False
        payload = get_runtime().tokens.verify_access_token(logged_in["access_token"])
        assert payload.user_id == logged_in["user"]["id"]

    def test_wrong_password_and_unknown_email_look_the_same(self, client):
        _register(client)
        wrong = _login(client, password="WrongPassword1")
        unknown = _login(client, email="ghost@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_access_token_opens_profile(self, client, logged_in):
        response = client.get("/v1/users/@me", headers=_auth(logged_in["access_token"]))
        assert response.status_code == 200
        profile = response.json()["data"]
        assert profile["id"] == logged_in["user"]["id"]
        assert profile["date_of_birth"] == "1995-06-15"
        assert "password_hash" not in profile


class TestRefreshAndLogout:
    def test_refresh_rotates(self, client, logged_in):
        old = logged_in["refresh_token"]
        response = client.post("/v1/auth/refresh", json={"refresh_token": old})
        assert response.status_code == 200
        new = response.json()["data"]["refresh_token"]
        assert new != old

        replay = client.post("/v1/auth/refresh", json={"refresh_token": old})
        assert replay.status_code == 401
        assert client.post("/v1/auth/refresh", json={"refresh_token": new}).status_code == 200

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_token_with_non_ascii_signature(self, client, logged_in):
        header, payload, _ = logged_in["refresh_token"].split(".")
        response = client.post("/v1/auth/refresh", json={"refresh_token": f"{header}.{payload}.éé"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_every_session(self, client, logged_in):
        second = _login(client).json()["data"]
        response = client.post("/v1/auth/logout", headers=_auth(logged_in["access_token"]))
        assert response.status_code == 204
        assert response.content == b""
        for token in (logged_in["refresh_token"], second["refresh_token"]):
            assert client.post("/v1/auth/refresh", json={"refresh_token": token}).status_code == 401

    def test_logout_requires_auth(self, client):
        assert client.post("/v1/auth/logout").status_code == 401


class TestEmailVerification:
    def test_verify_once(self, client, logged_in):
        user = get_runtime().store.get_user_by_email(EMAIL)
        token = user.email_verification_token
        first = client.post("/v1/auth/verify-email", json={"token": token})
        assert first.status_code == 200
        assert first.json()["data"]["success"] is True
        second = client.post("/v1/auth/verify-email", json={"token": token})
        assert second.status_code == 400

        profile = client.get("/v1/users/@me", headers=_auth(logged_in["access_token"]))
        assert profile.json()["data"]["email_verified"] is True

    def test_resend_verification(self, client, logged_in):
        response = client.post(
            "/v1/auth/resend-verification", headers=_auth(logged_in["access_token"])
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "sent"


class TestPasswordReset:
    def test_forgot_password_does_not_reveal_accounts(self, client):
        _register(client)
        known = client.post("/v1/auth/forgot-password", json={"email": EMAIL})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_flow_revokes_sessions(self, client, logged_in):
        client.post("/v1/auth/forgot-password", json={"email": EMAIL})
        token = get_runtime().store.get_user_by_email(EMAIL).password_reset_token
        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "NewPassword456!"}
        )
        assert response.status_code == 200

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": logged_in["refresh_token"]})
        assert refresh.status_code == 401
        assert _login(client).status_code == 401
        assert _login(client, password="NewPassword456!").status_code == 200

        reuse = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "Another789!"}
        )
        assert reuse.status_code == 400


class TestTwoFactor:
    def test_enable_then_verify(self, client, logged_in):
        headers = _auth(logged_in["access_token"])
        setup = client.post("/v1/auth/enable-2fa", headers=headers)
        assert setup.status_code == 200
        data = setup.json()["data"]
        assert data["qr_code"].startswith("data:image/png;base64,")
        assert len(data["backup_codes"]) == 8

        good = generate_totp(data["secret"], time.time())
        wrong = f"{(int(good) + 500000) % 1000000:06d}"
        rejected = client.post("/v1/auth/verify-2fa", json={"code": wrong}, headers=headers)
        assert rejected.status_code == 400

        accepted = client.post(
            "/v1/auth/verify-2fa",
            json={"code": generate_totp(data["secret"], time.time())},
            headers=headers,
        )
        assert accepted.status_code == 200
        assert accepted.json()["data"]["enabled"] is True

        again = client.post("/v1/auth/enable-2fa", headers=headers)
        assert again.status_code == 409

    def test_code_must_be_six_digits(self, client, logged_in):
        headers = _auth(logged_in["access_token"])
        client.post("/v1/auth/enable-2fa", headers=headers)
        response = client.post("/v1/auth/verify-2fa", json={"code": "12ab"}, headers=headers)
        assert response.status_code == 422

    def test_code_must_use_ascii_digits(self, client, logged_in):
        headers = _auth(logged_in["access_token"])
        client.post("/v1/auth/enable-2fa", headers=headers)
        response = client.post(
            "/v1/auth/verify-2fa",
            json={"code": "\u0661\u0662\u0663\u0664\u0665\u0666"},
            headers=headers,
        )
        assert response.status_code == 422


class TestHealth:
    def test_health_reports_memory_store(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
