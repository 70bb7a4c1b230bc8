"""Shared HTTP helpers for driving the full login flow in tests."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse


def register_and_enroll(client, runtime, *, name="Ada Lovelace", email="ada@example.com") -> str:
    """Register ``email`` and complete TOTP enrollment. Returns the TOTP secret."""
    setup_token = client.post(
        "/api/auth/register", json={"name": name, "email": email}
    ).json()["setupToken"]
    setup = client.get("/api/auth/setup-2fa", params={"token": setup_token}).json()
    confirm = client.post(
        "/api/auth/confirm-2fa-setup",
        json={
            "token": setup_token,
            "code": runtime.totp.generate_code(setup["base32"]),
            "base32": setup["base32"],
        },
    )
    assert confirm.status_code == 200, confirm.text
    return setup["base32"]


def request_two_factor_token(client, outbox, email="ada@example.com") -> str:
    """Request a magic link, follow it and return the 2FA token from the redirect."""
    response = client.post("/api/auth/login", json={"email": email})
    assert response.status_code == 200, response.text
    redirect = client.get(outbox[-1]["link"], follow_redirects=False)
    assert redirect.status_code == 302, redirect.text
    return parse_qs(urlparse(redirect.headers["location"]).query)["token"][0]


def complete_login(client, runtime, outbox, secret, email="ada@example.com"):
    two_factor_token = request_two_factor_token(client, outbox, email)
    return client.post(
        "/api/auth/verify2FA",
        json={"token": two_factor_token, "code": runtime.totp.generate_code(secret)},
    )
