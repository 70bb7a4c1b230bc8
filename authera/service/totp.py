from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import os
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import quote, urlencode

import qrcode

from authera.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
# Accept the previous and next step to absorb clock drift
TOTP_WINDOW = 1


@dataclass(frozen=True)
class Enrollment:
    secret: str
    provisioning_uri: str


def _decode_secret(secret: str) -> bytes:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    return base64.b32decode(padded, casefold=True)


class TOTPService:
    """RFC 6238 codes (HMAC-SHA1, 6 digits, 30 second step) for authenticator apps."""

    def __init__(self, issuer: str, *, clock: Callable[[], float] | None = None) -> None:
        self.issuer = issuer
        self._clock = clock or time.time

    def enroll(self, account_label: str) -> Enrollment:
        secret = base64.b32encode(os.urandom(20)).decode("ascii").rstrip("=")
        return Enrollment(secret=secret, provisioning_uri=self.provisioning_uri(secret, account_label))

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def render_qr(provisioning_uri: str) -> str:
        """Render ``provisioning_uri`` as a PNG ``data:`` URL for an <img> tag."""
        qr = qrcode.QRCode(version=1, box_size=10, border=4)
        qr.add_data(provisioning_uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def generate_code(self, secret: str, at: float | None = None) -> str:
        timestamp = self._clock() if at is None else at
        key = _decode_secret(secret)
        counter = int(timestamp // TOTP_INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify_code(self, secret: str, code: str) -> bool:
        """Return True if ``code`` matches the current step or one step either side.

        Malformed codes and undecodable secrets are rejected without raising.
        """
        if not isinstance(code, str):
            return False
        code = code.strip()
        if len(code) != TOTP_DIGITS or not (code.isascii() and code.isdigit()) or not secret:
            return False
        now = self._clock()
        try:
            candidates = [
                self.generate_code(secret, now + offset * TOTP_INTERVAL)
                for offset in range(-TOTP_WINDOW, TOTP_WINDOW + 1)
            ]
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return False
        matched = False
        for candidate in candidates:
            if hmac.compare_digest(candidate, code):
                matched = True
        return matched
