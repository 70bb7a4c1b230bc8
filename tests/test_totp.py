"""Unit tests for TOTP enrollment and verification."""

import base64

import pytest

from authera.service.totp import TOTP_INTERVAL, TOTPService

# RFC 6238 appendix B seed for HMAC-SHA1
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode().rstrip("=")


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def totp(clock):
    return TOTPService("Authera", clock=clock)


class TestGenerate:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924"), (2000000000, "279037")],
    )
    def test_matches_rfc6238_vectors(self, totp, timestamp, expected):
        assert totp.generate_code(RFC_SECRET, at=timestamp) == expected


class TestEnroll:
    def test_secret_is_base32_and_unique(self, totp):
        first = totp.enroll("ada@example.com")
        second = totp.enroll("ada@example.com")

        assert first.secret != second.secret
        base64.b32decode(first.secret + "=" * ((8 - len(first.secret) % 8) % 8))

    def test_provisioning_uri_names_issuer_and_account(self, totp):
        enrollment = totp.enroll("ada@example.com")

        assert enrollment.provisioning_uri.startswith("otpauth://totp/Authera:ada@example.com?")
        assert f"secret={enrollment.secret}" in enrollment.provisioning_uri
        assert "issuer=Authera" in enrollment.provisioning_uri

    def test_qr_is_png_data_url(self, totp):
        enrollment = totp.enroll("ada@example.com")
        qr = totp.render_qr(enrollment.provisioning_uri)

        assert qr.startswith("data:image/png;base64,")
        png = base64.b64decode(qr.split(",", 1)[1])
        assert png[:8] == b"\x89PNG\r\n\x1a\n"


class TestVerify:
    def test_current_step_accepted(self, totp, clock):
        secret = totp.enroll("a@example.com").secret
        assert totp.verify_code(secret, totp.generate_code(secret, clock.now))

    @pytest.mark.parametrize("steps", [-1, 1])
    def test_adjacent_steps_accepted(self, totp, clock, steps):
        secret = totp.enroll("a@example.com").secret
        code = totp.generate_code(secret, clock.now + steps * TOTP_INTERVAL)
        assert totp.verify_code(secret, code)

    @pytest.mark.parametrize("steps", [-2, 2])
    def test_steps_outside_window_rejected(self, totp, clock, steps):
        secret = totp.enroll("a@example.com").secret
        code = totp.generate_code(secret, clock.now + steps * TOTP_INTERVAL)
        window = {
            totp.generate_code(secret, clock.now + offset * TOTP_INTERVAL) for offset in (-1, 0, 1)
        }
        if code in window:
            pytest.skip("code collided with an in-window step")
        assert not totp.verify_code(secret, code)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", "12 456", None, "١٢٣٤٥٦"])
    def test_malformed_codes_rejected_without_raising(self, totp, code):
        secret = totp.enroll("a@example.com").secret
        assert totp.verify_code(secret, code) is False

    def test_undecodable_secret_rejected_without_raising(self, totp):
        assert totp.verify_code("not base32 at all!!", "123456") is False

    def test_surrounding_whitespace_tolerated(self, totp, clock):
        secret = totp.enroll("a@example.com").secret
        assert totp.verify_code(secret, f" {totp.generate_code(secret, clock.now)} ")
