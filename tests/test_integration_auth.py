"""Integration tests for the passwordless login flow.

Covers the whole journey through the HTTP API:
- Registration and TOTP enrollment
- Magic-link request and verification
- Second-factor verification and the session cookie
- Single-session enforcement and session fixation
- Logout and the protected dashboard
"""

import time
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from authera import app as app_module
from authera.service.tokens import TokenPurpose
from authera.storage.errors import CacheUnavailable
from helpers import complete_login, register_and_enroll, request_two_factor_token

EMAIL = "ada@example.com"
# Host-only cookies for "testserver" are stored under this domain by the cookie jar
COOKIE_DOMAIN = "testserver.local"


class TestRegistration:
    def test_register_returns_setup_token(self, client, runtime):
        response = client.post("/api/auth/register", json={"name": "Ada", "email": "Ada@Example.com "})

        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Token sent"
        claims = runtime.tokens.verify(body["setupToken"], (TokenPurpose.SETUP,))
        assert claims.email == EMAIL
        assert claims.name == "Ada"
        # Nothing persisted until enrollment is confirmed
        assert not runtime.store.user_exists(EMAIL)

    @pytest.mark.parametrize("payload", [{}, {"name": "Ada"}, {"email": EMAIL}, {"name": "  ", "email": EMAIL}])
    def test_register_requires_name_and_email(self, client, payload):
        response = client.post("/api/auth/register", json=payload)

        assert response.status_code == 400
        assert response.json()["message"] == "Name and email required"

    def test_register_rejects_malformed_email(self, client):
        response = client.post("/api/auth/register", json={"name": "Ada", "email": "not-an-email"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_existing_user_conflicts(self, client, runtime):
        register_and_enroll(client, runtime)

        response = client.post("/api/auth/register", json={"name": "Ada", "email": EMAIL})

        assert response.status_code == 409
        assert response.json()["message"] == "User already exists"


class TestTwoFactorEnrollment:
    def _setup_token(self, client):
        return client.post("/api/auth/register", json={"name": "Ada", "email": EMAIL}).json()["setupToken"]

    def test_setup_returns_secret_and_qr(self, client):
        token = self._setup_token(client)

        response = client.get("/api/auth/setup-2fa", params={"token": token})

        assert response.status_code == 200
        body = response.json()
        assert body["email"] == EMAIL
        assert body["qr"].startswith("data:image/png;base64,")
        assert len(body["base32"]) == 32

    def test_setup_accepts_header_token(self, client):
        token = self._setup_token(client)

        response = client.get("/api/auth/setup-2fa", headers={"X-Setup-Token": token})

        assert response.status_code == 200
        assert response.json()["email"] == EMAIL

    def test_setup_issues_new_secret_each_call(self, client):
        token = self._setup_token(client)

        first = client.get("/api/auth/setup-2fa", params={"token": token}).json()["base32"]
        second = client.get("/api/auth/setup-2fa", params={"token": token}).json()["base32"]

        assert first != second

    def test_setup_without_token(self, client):
        response = client.get("/api/auth/setup-2fa")

        assert response.status_code == 400
        assert response.json()["message"] == "Missing token"

    def test_setup_with_invalid_token(self, client):
        response = client.get("/api/auth/setup-2fa", params={"token": "garbage"})

        assert response.status_code == 401
        assert response.json()["message"] == "Session expired. Refresh the page."

    def test_setup_rejects_login_token(self, client, runtime):
        login_token = runtime.tokens.issue({"email": EMAIL}, TokenPurpose.LOGIN)

        response = client.get("/api/auth/setup-2fa", params={"token": login_token})

        assert response.status_code == 401

    def test_confirm_with_wrong_code_creates_nothing(self, client, runtime):
        token = self._setup_token(client)
        secret = client.get("/api/auth/setup-2fa", params={"token": token}).json()["base32"]
        wrong = str((int(runtime.totp.generate_code(secret)) + 500000) % 1000000).zfill(6)

        response = client.post(
            "/api/auth/confirm-2fa-setup", json={"token": token, "code": wrong, "base32": secret}
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid 2FA code"
        assert not runtime.store.user_exists(EMAIL)

    def test_confirm_creates_user_with_secret(self, client, runtime):
        token = self._setup_token(client)
        secret = client.get("/api/auth/setup-2fa", params={"token": token}).json()["base32"]

        response = client.post(
            "/api/auth/confirm-2fa-setup",
            json={"token": token, "code": runtime.totp.generate_code(secret), "base32": secret},
        )

        assert response.status_code == 200
        assert response.json()["message"] == "2FA setup complete. Kindly log in."
        user = runtime.store.get_user_by_email(EMAIL)
        assert user.name == "Ada"
        assert user.totp_secret == secret

    def test_confirm_accepts_numeric_code(self, client, runtime):
        token = self._setup_token(client)
        secret = client.get("/api/auth/setup-2fa", params={"token": token}).json()["base32"]

        response = client.post(
            "/api/auth/confirm-2fa-setup",
            json={"token": token, "code": int(runtime.totp.generate_code(secret)), "base32": secret},
        )

        assert response.status_code == 200

    def test_confirm_requires_all_fields(self, client):
        token = self._setup_token(client)

        response = client.post("/api/auth/confirm-2fa-setup", json={"token": token, "code": "123456"})

        assert response.status_code == 400
        assert response.json()["message"] == "Missing required fields"

    def test_setup_token_cannot_be_reused(self, client, runtime):
        token = self._setup_token(client)
        secret = client.get("/api/auth/setup-2fa", params={"token": token}).json()["base32"]
        payload = {"token": token, "code": runtime.totp.generate_code(secret), "base32": secret}
        assert client.post("/api/auth/confirm-2fa-setup", json=payload).status_code == 200

        replay = client.post("/api/auth/confirm-2fa-setup", json=payload)

        assert replay.status_code == 401
        assert client.get("/api/auth/setup-2fa", params={"token": token}).status_code == 401


class TestMagicLink:
    def test_login_sends_link_to_backend(self, client, runtime, outbox):
        register_and_enroll(client, runtime)

        response = client.post("/api/auth/login", json={"email": EMAIL})

        assert response.status_code == 200
        assert response.json()["message"] == "Login link sent! Check your inbox."
        assert len(outbox) == 1
        assert outbox[0]["to"] == EMAIL
        assert outbox[0]["expires_in_minutes"] == 5
        link = urlparse(outbox[0]["link"])
        assert f"{link.scheme}://{link.netloc}" == "http://testserver"
        assert link.path == "/api/auth/verifyLink"
        token = parse_qs(link.query)["token"][0]
        assert runtime.tokens.verify(token, (TokenPurpose.LOGIN,)).email == EMAIL

    def test_login_requires_email(self, client, outbox):
        response = client.post("/api/auth/login", json={"email": ""})

        assert response.status_code == 400
        assert response.json()["message"] == "Email is required."
        assert outbox == []

    def test_login_unknown_email(self, client, outbox):
        response = client.post("/api/auth/login", json={"email": "nobody@example.com"})

        assert response.status_code == 404
        assert response.json()["message"] == "No account found with that email."
        assert outbox == []

    def test_login_delivery_failure(self, client, runtime):
        register_and_enroll(client, runtime)
        runtime.email.send_magic_link = lambda *args, **kwargs: False

        response = client.post("/api/auth/login", json={"email": EMAIL})

        assert response.status_code == 500
        assert response.json()["message"] == "Failed to send login link. Please try again later."

    def test_verify_link_redirects_to_client(self, client, runtime, outbox):
        register_and_enroll(client, runtime)
        client.post("/api/auth/login", json={"email": EMAIL})

        response = client.get(outbox[0]["link"], follow_redirects=False)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == "http://client.test/2fa"
        token = parse_qs(location.query)["token"][0]
        assert runtime.tokens.verify(token, (TokenPurpose.TWO_FACTOR,)).email == EMAIL

    def test_verify_link_is_single_use(self, client, runtime, outbox):
        register_and_enroll(client, runtime)
        client.post("/api/auth/login", json={"email": EMAIL})
        assert client.get(outbox[0]["link"], follow_redirects=False).status_code == 302

        replay = client.get(outbox[0]["link"], follow_redirects=False)

        assert replay.status_code == 401
        assert replay.text == "Invalid or expired login link"
        assert replay.headers["content-type"].startswith("text/plain")

    def test_verify_link_without_token(self, client):
        response = client.get("/api/auth/verifyLink", follow_redirects=False)

        assert response.status_code == 400
        assert response.text == "Token is missing"

    def test_verify_link_rejects_garbage(self, client):
        response = client.get("/api/auth/verifyLink", params={"token": "abc.def.ghi"}, follow_redirects=False)

        assert response.status_code == 401
        assert response.text == "Invalid or expired login link"

    def test_verify_link_rejects_other_purposes(self, client, runtime):
        setup_token = runtime.tokens.issue({"name": "Ada", "email": EMAIL}, TokenPurpose.SETUP)

        response = client.get("/api/auth/verifyLink", params={"token": setup_token}, follow_redirects=False)

        assert response.status_code == 401


class TestSecondFactor:
    def test_verify_sets_session_cookie(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)

        response = complete_login(client, runtime, outbox, secret)

        assert response.status_code == 200
        assert response.json() == {"message": "2FA verified successfully", "redirectTo": "/dashboard"}
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("sid=")
        assert "httponly" in set_cookie.lower()
        assert "max-age=300" in set_cookie.lower()
        assert client.cookies.get("sid")

    def test_dashboard_greets_user(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        complete_login(client, runtime, outbox, secret)

        response = client.get("/api/dashboard/home")

        assert response.status_code == 200
        assert response.json()["message"] == f"Hello, {EMAIL}!"

    def test_dashboard_requires_session(self, client):
        response = client.get("/api/dashboard/home")

        assert response.status_code == 401
        assert response.json()["message"] == "Not authenticated"

    def test_wrong_code_keeps_token_usable(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        token = request_two_factor_token(client, outbox)
        wrong = str((int(runtime.totp.generate_code(secret)) + 500000) % 1000000).zfill(6)

        rejected = client.post("/api/auth/verify2FA", json={"token": token, "code": wrong})
        accepted = client.post(
            "/api/auth/verify2FA", json={"token": token, "code": runtime.totp.generate_code(secret)}
        )

        assert rejected.status_code == 401
        assert rejected.json()["message"] == "Invalid 2FA code"
        assert accepted.status_code == 200

    def test_two_factor_token_is_single_use(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        token = request_two_factor_token(client, outbox)
        payload = {"token": token, "code": runtime.totp.generate_code(secret)}
        assert client.post("/api/auth/verify2FA", json=payload).status_code == 200

        replay = client.post("/api/auth/verify2FA", json=payload)

        assert replay.status_code == 401
        assert replay.json()["message"] == "Invalid or expired token. Refresh the page."

    def test_verify_requires_token_and_code(self, client):
        response = client.post("/api/auth/verify2FA", json={"token": "abc"})

        assert response.status_code == 400
        assert response.json()["message"] == "Missing token or 2FA code"

    def test_verify_rejects_login_token(self, client, runtime):
        secret = register_and_enroll(client, runtime)
        login_token = runtime.tokens.issue({"email": EMAIL}, TokenPurpose.LOGIN)

        response = client.post(
            "/api/auth/verify2FA", json={"token": login_token, "code": runtime.totp.generate_code(secret)}
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired token. Refresh the page."

    def test_verify_rejects_expired_token(self, client, runtime):
        secret = register_and_enroll(client, runtime)
        token = runtime.tokens.issue({"email": EMAIL}, TokenPurpose.TWO_FACTOR)
        runtime.tokens._clock = lambda: time.time() + 301

        response = client.post(
            "/api/auth/verify2FA", json={"token": token, "code": runtime.totp.generate_code(secret)}
        )

        assert response.status_code == 401

    def test_verify_for_missing_user(self, client, runtime):
        token = runtime.tokens.issue({"email": "ghost@example.com"}, TokenPurpose.TWO_FACTOR)

        response = client.post("/api/auth/verify2FA", json={"token": token, "code": "123456"})

        assert response.status_code == 404
        assert response.json()["message"] == "User not found"

    def test_session_store_failure(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        token = request_two_factor_token(client, outbox)
        runtime.sessions.create = AsyncMock(side_effect=CacheUnavailable("redis down"))

        response = client.post(
            "/api/auth/verify2FA", json={"token": token, "code": runtime.totp.generate_code(secret)}
        )

        assert response.status_code == 500
        assert response.json()["message"] == "Failed to regenerate session"
        assert "set-cookie" not in response.headers


class TestSingleSession:
    def test_new_login_evicts_previous_session(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        complete_login(client, runtime, outbox, secret)
        other_device = TestClient(app_module.app)

        assert complete_login(other_device, runtime, outbox, secret).status_code == 200

        assert client.get("/api/dashboard/home").status_code == 401
        assert other_device.get("/api/dashboard/home").status_code == 200

    def test_sessions_of_other_users_survive(self, client, runtime, outbox):
        ada_secret = register_and_enroll(client, runtime)
        other_device = TestClient(app_module.app)
        grace_secret = register_and_enroll(other_device, runtime, name="Grace", email="grace@example.com")

        complete_login(client, runtime, outbox, ada_secret)
        complete_login(other_device, runtime, outbox, grace_secret, email="grace@example.com")

        assert client.get("/api/dashboard/home").json()["message"] == f"Hello, {EMAIL}!"
        assert other_device.get("/api/dashboard/home").json()["message"] == "Hello, grace@example.com!"

    def test_planted_session_id_is_replaced(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        client.cookies.set("sid", "attacker-chosen-id", domain=COOKIE_DOMAIN)

        complete_login(client, runtime, outbox, secret)

        issued = client.cookies.get("sid")
        assert issued and issued != "attacker-chosen-id"
        assert client.get("/api/dashboard/home").status_code == 200

    def test_known_session_id_is_not_promoted(self, client, runtime, outbox):
        import asyncio

        secret = register_and_enroll(client, runtime)
        planted = asyncio.run(runtime.sessions.create("mallory@example.com"))
        client.cookies.set("sid", planted.id, domain=COOKIE_DOMAIN)

        complete_login(client, runtime, outbox, secret)

        assert client.cookies.get("sid") != planted.id
        assert asyncio.run(runtime.sessions.resolve(planted.id)) is None


class TestValidateToken:
    def test_valid_two_factor_token(self, client, runtime):
        token = runtime.tokens.issue({"email": EMAIL}, TokenPurpose.TWO_FACTOR)

        response = client.post("/api/auth/validate-2fa-token", json={"token": token})

        assert response.status_code == 200
        assert response.json() == {"valid": True}

    def test_valid_setup_token(self, client, runtime):
        token = runtime.tokens.issue({"name": "Ada", "email": EMAIL}, TokenPurpose.SETUP)

        response = client.post("/api/auth/validate-2fa-token", json={"token": token})

        assert response.status_code == 200

    def test_login_token_is_rejected(self, client, runtime):
        token = runtime.tokens.issue({"email": EMAIL}, TokenPurpose.LOGIN)

        response = client.post("/api/auth/validate-2fa-token", json={"token": token})

        assert response.status_code == 401
        assert response.json()["message"] == "Token expired or invalid"

    def test_missing_token(self, client):
        response = client.post("/api/auth/validate-2fa-token", json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Token missing"

    def test_validation_does_not_consume(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        token = request_two_factor_token(client, outbox)

        for _ in range(3):
            assert client.post("/api/auth/validate-2fa-token", json={"token": token}).status_code == 200

        response = client.post(
            "/api/auth/verify2FA", json={"token": token, "code": runtime.totp.generate_code(secret)}
        )
        assert response.status_code == 200
        assert client.post("/api/auth/validate-2fa-token", json={"token": token}).status_code == 401


class TestLogout:
    def test_logout_ends_session(self, client, runtime, outbox):
        secret = register_and_enroll(client, runtime)
        complete_login(client, runtime, outbox, secret)
        session_id = client.cookies.get("sid")

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["message"] == "Logged out successfully"
        assert 'sid=""' in response.headers["set-cookie"] or "sid=;" in response.headers["set-cookie"]
        client.cookies.set("sid", session_id, domain=COOKIE_DOMAIN)
        assert client.get("/api/dashboard/home").status_code == 401

    def test_logout_without_session(self, client):
        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert "max-age=0" in response.headers["set-cookie"].lower()

    def test_logout_store_failure_still_clears_cookie(self, client, runtime):
        runtime.sessions.destroy = AsyncMock(side_effect=CacheUnavailable("redis down"))
        client.cookies.set("sid", "some-session", domain=COOKIE_DOMAIN)

        response = client.post("/api/auth/logout")

        assert response.status_code == 500
        assert response.json()["message"] == "Logout failed"
        assert "max-age=0" in response.headers["set-cookie"].lower()
