"""Integration tests for the HTTP auth flow.

Tests the complete auth flow including:
- Registration and e-mail verification
- Login with password and with a second factor
- Token refresh and validation
- Session listing and revocation
- Logout
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.runtime import get_runtime
from authcore.service.totp import totp_at


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


@pytest.fixture
def active_user(client, test_user_email, test_user_password):
    """Register and activate an account through the admin transition."""
    response = client.post(
        "/auth/register",
        json={"email": test_user_email, "password": test_user_password},
    )
    assert response.status_code == 201
    account_id = response.json()["data"]["account"]["id"]
    _run(get_runtime().auth.transition_account(account_id, "active"))
    return account_id


def _run(coro):
    return asyncio.run(coro)


def _login(client, email, password, device_id="device-1", **extra):
    return client.post(
        "/auth/login",
        json={"email": email, "password": password, **extra},
        headers={"X-Device-ID": device_id},
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistrationFlow:
    def test_register_creates_pending_account(self, client, test_user_email, test_user_password):
        response = client.post(
            "/auth/register",
            json={"email": test_user_email, "password": test_user_password, "user_type": "traveler"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["account"]["status"] == "pending"
        assert data["data"]["account"]["user_type"] == "traveler"
        assert data["data"]["verification_expires_in"] == 1800

    def test_register_rejects_duplicate_email(self, client, test_user_email, test_user_password):
        payload = {"email": test_user_email, "password": test_user_password}
        client.post("/auth/register", json=payload)
        response = client.post("/auth/register", json=payload)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_validates_email_format(self, client, test_user_password):
        response = client.post(
            "/auth/register",
            json={"email": "invalid-email", "password": test_user_password},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_validates_password_strength(self, client, test_user_email):
        response = client.post(
            "/auth/register",
            json={"email": test_user_email, "password": "short"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "password"

    def test_register_rejects_unknown_user_type(self, client, test_user_email, test_user_password):
        response = client.post(
            "/auth/register",
            json={"email": test_user_email, "password": test_user_password, "user_type": "admin"},
        )
        assert response.status_code == 400

    def test_verify_email_then_login(self, client, test_user_email, test_user_password):
        registration = _run(
            get_runtime().auth.register_account(test_user_email, test_user_password)
        )

        blocked = _login(client, test_user_email, test_user_password)
        assert blocked.status_code == 401

        response = client.post(
            "/auth/verify-email",
            json={"email": test_user_email, "code": registration.verification_code},
        )
        assert response.status_code == 200
        assert response.json()["data"]["verification_level"] == "email_verified"

        assert _login(client, test_user_email, test_user_password).status_code == 200

    def test_verify_email_with_wrong_code(self, client, test_user_email, test_user_password):
        client.post(
            "/auth/register",
            json={"email": test_user_email, "password": test_user_password},
        )
        response = client.post(
            "/auth/verify-email", json={"email": test_user_email, "code": "0000000"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginFlow:
    def test_login_with_valid_credentials(
        self, client, active_user, test_user_email, test_user_password
    ):
        response = _login(client, test_user_email, test_user_password, platform="ios")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requires_2fa"] is False
        assert data["account"]["id"] == active_user
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["tokens"]["expires_in"] == 1800
        assert data["security"]["suspicious"] is False
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["Cache-Control"] == "no-store"

    def test_invalid_password_and_unknown_email_match(
        self, client, active_user, test_user_email, test_user_password
    ):
        wrong = _login(client, test_user_email, "WrongPassword1!")
        unknown = _login(client, "nobody@example.com", test_user_password)

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_login_rate_limited_per_email(self, client, active_user, test_user_email):
        statuses = [
            _login(client, test_user_email, "WrongPassword1!").status_code for _ in range(11)
        ]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

        limited = _login(client, test_user_email, "WrongPassword1!")
        body = limited.json()
        assert body["error"]["code"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) == body["error"]["details"]["retry_after"]

    def test_login_rejects_unknown_device_type(
        self, client, active_user, test_user_email, test_user_password
    ):
        response = _login(client, test_user_email, test_user_password, device_type="toaster")
        assert response.status_code == 400


class TestTokenFlow:
    def test_refresh_and_validate(self, client, active_user, test_user_email, test_user_password):
        login = _login(client, test_user_email, test_user_password).json()["data"]

        refreshed = client.post(
            "/auth/refresh", json={"refresh_token": login["tokens"]["refresh_token"]}
        )
        assert refreshed.status_code == 200
        access_token = refreshed.json()["data"]["access_token"]

        validated = client.get("/auth/validate", headers=_bearer(access_token))
        assert validated.status_code == 200
        data = validated.json()["data"]
        assert data["valid"] is True
        assert data["session_id"] == login["tokens"]["session_id"]
        assert data["device_id"] == "device-1"

    def test_refresh_with_garbage(self, client):
        response = client.post("/auth/refresh", json={"refresh_token": "not.a.jwt"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_malformed"

    def test_validate_requires_bearer(self, client):
        assert client.get("/auth/validate").status_code == 401
        response = client.get("/auth/validate", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_token_is_not_a_bearer(
        self, client, active_user, test_user_email, test_user_password
    ):
        login = _login(client, test_user_email, test_user_password).json()["data"]
        response = client.get("/auth/validate", headers=_bearer(login["tokens"]["refresh_token"]))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "wrong_token_kind"

    def test_logout_revokes_token(self, client, active_user, test_user_email, test_user_password):
        login = _login(client, test_user_email, test_user_password).json()["data"]
        headers = _bearer(login["tokens"]["access_token"])

        response = client.post("/auth/logout", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1

        after = client.get("/auth/validate", headers=headers)
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "token_revoked"

        refresh = client.post(
            "/auth/refresh", json={"refresh_token": login["tokens"]["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_logout_all_devices(self, client, active_user, test_user_email, test_user_password):
        first = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        second = _login(client, test_user_email, test_user_password, "device-2").json()["data"]

        response = client.post(
            "/auth/logout",
            json={"all_devices": True},
            headers=_bearer(first["tokens"]["access_token"]),
        )
        assert response.json()["data"]["sessions_revoked"] == 2

        other = client.get("/auth/validate", headers=_bearer(second["tokens"]["access_token"]))
        assert other.status_code == 401


class TestSessionManagement:
    def test_list_and_revoke_sessions(self, client, active_user, test_user_email, test_user_password):
        first = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        second = _login(
            client, test_user_email, test_user_password, "device-2", device_type="mobile"
        ).json()["data"]
        headers = _bearer(first["tokens"]["access_token"])

        listing = client.get("/auth/sessions", headers=headers).json()["data"]["items"]
        assert len(listing) == 2
        current = [s for s in listing if s["current"]]
        assert [s["id"] for s in current] == [first["tokens"]["session_id"]]

        stats = client.get("/auth/sessions/stats", headers=headers).json()["data"]
        assert stats["active"] == 2
        assert stats["device_types"] == {"web": 1, "mobile": 1}

        revoked = client.delete(f"/auth/sessions/{second['tokens']['session_id']}", headers=headers)
        assert revoked.status_code == 200
        again = client.delete(f"/auth/sessions/{second['tokens']['session_id']}", headers=headers)
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "session_not_found"

    def test_revoke_all_other_sessions(self, client, active_user, test_user_email, test_user_password):
        first = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        _login(client, test_user_email, test_user_password, "device-2")
        _login(client, test_user_email, test_user_password, "device-3")
        headers = _bearer(first["tokens"]["access_token"])

        response = client.delete("/auth/sessions", headers=headers)
        assert response.json()["data"]["sessions_revoked"] == 2
        assert client.get("/auth/validate", headers=headers).status_code == 200

    def test_current_session(self, client, active_user, test_user_email, test_user_password):
        login = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        headers = _bearer(login["tokens"]["access_token"])

        response = client.get("/auth/sessions/current", headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == login["tokens"]["session_id"]
        assert data["device_id"] == "device-1"
        assert data["current"] is True
        assert data["token_expires_at"]

    def test_extend_current_session(self, client, active_user, test_user_email, test_user_password):
        login = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        headers = _bearer(login["tokens"]["access_token"])
        before = get_runtime().store.get_session(login["tokens"]["session_id"]).last_active_at

        response = client.post("/auth/sessions/current/extend", headers=headers)
        assert response.status_code == 200
        after = get_runtime().store.get_session(login["tokens"]["session_id"]).last_active_at
        assert after >= before
        assert response.json()["data"]["last_active_at"] == after.isoformat()

    def test_suspicious_sessions_quiet_for_single_device(
        self, client, active_user, test_user_email, test_user_password
    ):
        login = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        response = client.get(
            "/auth/sessions/suspicious", headers=_bearer(login["tokens"]["access_token"])
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["suspicious"] is False
        assert data["items"] == []
        assert data["session_count"] == 1

    def test_suspicious_sessions_flag_mixed_devices(
        self, client, active_user, test_user_email, test_user_password
    ):
        first = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        second = _login(
            client, test_user_email, test_user_password, "device-2", device_type="mobile"
        ).json()["data"]

        response = client.get(
            "/auth/sessions/suspicious", headers=_bearer(first["tokens"]["access_token"])
        )
        data = response.json()["data"]
        assert data["suspicious"] is True
        assert data["flags"] == ["mixed_device_types"]
        assert data["risk_level"] == "low"
        assert [s["id"] for s in data["items"]] == [second["tokens"]["session_id"]]

    def test_session_routes_require_bearer(self, client):
        assert client.get("/auth/sessions/current").status_code == 401
        assert client.get("/auth/sessions/suspicious").status_code == 401
        assert client.post("/auth/sessions/current/extend").status_code == 401

    def test_password_change_signs_out_other_sessions(
        self, client, active_user, test_user_email, test_user_password
    ):
        first = _login(client, test_user_email, test_user_password, "device-1").json()["data"]
        second = _login(client, test_user_email, test_user_password, "device-2").json()["data"]

        response = client.post(
            "/auth/password/change",
            json={"current_password": test_user_password, "new_password": "NewPassword456!"},
            headers=_bearer(first["tokens"]["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert (
            client.get("/auth/validate", headers=_bearer(second["tokens"]["access_token"])).status_code
            == 401
        )
        assert _login(client, test_user_email, "NewPassword456!", "device-3").status_code == 200


class TestSecondFactorFlow:
    def _enable(self, client, access_token):
        headers = _bearer(access_token)
        setup = client.post("/auth/2fa/setup", headers=headers)
        assert setup.status_code == 200
        data = setup.json()["data"]
        assert data["provisioning_uri"].startswith("otpauth://totp/")
        enable = client.post(
            "/auth/2fa/enable",
            json={"code": totp_at(data["secret"], time.time())},
            headers=headers,
        )
        assert enable.status_code == 200
        return data

    def test_enable_and_login_with_temp_token(
        self, client, active_user, test_user_email, test_user_password
    ):
        login = _login(client, test_user_email, test_user_password).json()["data"]
        setup = self._enable(client, login["tokens"]["access_token"])

        challenge = _login(client, test_user_email, test_user_password, "device-2")
        assert challenge.status_code == 200
        data = challenge.json()["data"]
        assert data["requires_2fa"] is True
        assert "tokens" not in data

        completed = client.post(
            "/auth/2fa/login",
            json={"temp_token": data["temp_token"], "code": totp_at(setup["secret"], time.time())},
        )
        assert completed.status_code == 200
        tokens = completed.json()["data"]["tokens"]
        assert client.get("/auth/validate", headers=_bearer(tokens["access_token"])).status_code == 200

    def test_temp_token_is_not_a_bearer(self, client, active_user, test_user_email, test_user_password):
        login = _login(client, test_user_email, test_user_password).json()["data"]
        self._enable(client, login["tokens"]["access_token"])
        temp_token = _login(client, test_user_email, test_user_password).json()["data"]["temp_token"]

        response = client.get("/auth/validate", headers=_bearer(temp_token))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "second_factor_required"

    def test_login_with_backup_code_warns_when_low(
        self, client, active_user, test_user_email, test_user_password
    ):
        get_runtime().second_factor.backup_code_count = 3
        login = _login(client, test_user_email, test_user_password).json()["data"]
        setup = self._enable(client, login["tokens"]["access_token"])

        response = client.post(
            "/auth/2fa/login",
            json={
                "email": test_user_email,
                "password": test_user_password,
                "code": setup["backup_codes"][0],
            },
            headers={"X-Device-ID": "device-2"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["backup_codes_remaining"] == 2
        assert data["warning"] == "Only 2 backup codes remaining. Consider regenerating them."

    def test_wrong_second_factor_code(self, client, active_user, test_user_email, test_user_password):
        login = _login(client, test_user_email, test_user_password).json()["data"]
        self._enable(client, login["tokens"]["access_token"])
        temp_token = _login(client, test_user_email, test_user_password).json()["data"]["temp_token"]

        response = client.post("/auth/2fa/login", json={"temp_token": temp_token, "code": "ZZZZZZ"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_second_factor_code"

    def test_second_factor_login_requires_token_or_credentials(self, client):
        response = client.post("/auth/2fa/login", json={"code": "123456"})
        assert response.status_code == 400

    def test_status_regenerate_and_disable(
        self, client, active_user, test_user_email, test_user_password
    ):
        login = _login(client, test_user_email, test_user_password).json()["data"]
        headers = _bearer(login["tokens"]["access_token"])
        setup = self._enable(client, login["tokens"]["access_token"])

        status = client.get("/auth/2fa/status", headers=headers).json()["data"]
        assert status["enabled"] is True
        assert status["backup_codes_count"] == 10

        verify = client.post(
            "/auth/2fa/verify", json={"code": setup["backup_codes"][0]}, headers=headers
        )
        assert verify.json()["data"]["method"] == "backup_code"
        assert verify.json()["data"]["backup_codes_remaining"] == 9

        regenerated = client.post(
            "/auth/2fa/regenerate-backup-codes",
            json={"code": totp_at(setup["secret"], time.time())},
            headers=headers,
        )
        assert len(regenerated.json()["data"]["backup_codes"]) == 10

        disabled = client.post(
            "/auth/2fa/disable",
            json={"code": totp_at(setup["secret"], time.time())},
            headers=headers,
        )
        assert disabled.json()["data"] == {"enabled": False}
        assert client.get("/auth/2fa/status", headers=headers).json()["data"]["enabled"] is False
