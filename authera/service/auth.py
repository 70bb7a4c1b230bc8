from __future__ import annotations

import asyncio
from typing import Optional, Protocol
from urllib.parse import quote

from authera.config import Settings
from authera.logging import get_logger
from authera.service.email import EmailService
from authera.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from authera.service.rate_limit import RateLimiter
from authera.service.sessions import SessionManager
from authera.service.tokens import TokenClaims, TokenPurpose, TokenService
from authera.service.totp import TOTPService
from authera.storage.errors import CacheUnavailable, ConstraintViolation
from authera.storage.models import Session, User

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(self, name: str, email: str, totp_secret: str) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def user_exists(self, email: str) -> bool: ...


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _normalize_email(value: Optional[str]) -> Optional[str]:
    cleaned = _clean(value)
    return cleaned.lower() if cleaned else None


class AuthService:
    """Registration, TOTP enrollment, magic-link login and second-factor checks.

    No state is kept between steps other than what the client carries in a
    signed token: register hands out a setup token, the emailed link carries a
    login token, and ``verifyLink`` exchanges it for a 2FA token.
    """

    def __init__(
        self,
        store: UserStore,
        cache,
        settings: Settings,
        *,
        tokens: TokenService,
        totp: TOTPService,
        sessions: SessionManager,
        email: EmailService,
        two_factor_limiter: RateLimiter,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.totp = totp
        self.sessions = sessions
        self.email = email
        self.two_factor_limiter = two_factor_limiter
        self.logger = logger

    # -- token replay -----------------------------------------------------

    async def _is_consumed(self, claims: TokenClaims) -> bool:
        if not self.settings.single_use_tokens:
            return False
        try:
            return await self.cache.is_token_claimed(claims.jti)
        except CacheUnavailable as exc:
            self.logger.error("token_claim_check_failed", error=str(exc))
            raise ServerError("Token store unavailable")

    async def _consume(self, claims: TokenClaims) -> bool:
        """Mark the token as used. Returns False if another request got there first."""
        if not self.settings.single_use_tokens:
            return True
        ttl = claims.seconds_left(self.tokens.now())
        try:
            return await self.cache.claim_token(claims.jti, ttl)
        except CacheUnavailable as exc:
            self.logger.error("token_claim_failed", error=str(exc))
            raise ServerError("Token store unavailable")

    async def _verify_token(
        self, token: str, purposes: tuple[TokenPurpose, ...], failure_message: str
    ) -> TokenClaims:
        try:
            claims = self.tokens.verify(token, purposes)
        except AuthenticationError as exc:
            self.logger.info(
                "token_rejected",
                reason=exc.message,
                purposes=[p.value for p in purposes],
            )
            raise AuthenticationError(failure_message)
        if await self._is_consumed(claims):
            self.logger.info("token_replayed", purpose=claims.purpose.value)
            raise AuthenticationError(failure_message)
        return claims

    # -- registration and enrollment -------------------------------------

    async def register(self, name: Optional[str], email: Optional[str]) -> str:
        """Return a setup token for a new account. Nothing is persisted yet.

        Raises:
            ValidationError: name or email missing
            ConflictError: an account with that email already exists
        """
        name = _clean(name)
        email = _normalize_email(email)
        if not name or not email:
            raise ValidationError("Name and email required")
        if self.store.user_exists(email):
            raise ConflictError("User already exists")
        token = self.tokens.issue({"name": name, "email": email}, TokenPurpose.SETUP)
        self.logger.info("registration_started", email=email)
        return token

    async def setup_two_factor(self, setup_token: Optional[str]) -> dict:
        """Generate a fresh TOTP secret and its QR code for the holder of a setup token."""
        setup_token = _clean(setup_token)
        if not setup_token:
            raise ValidationError("Missing token")
        claims = await self._verify_token(
            setup_token, (TokenPurpose.SETUP,), "Session expired. Refresh the page."
        )
        enrollment = self.totp.enroll(claims.email)
        return {
            "qr": self.totp.render_qr(enrollment.provisioning_uri),
            "base32": enrollment.secret,
            "email": claims.email,
        }

    async def confirm_two_factor_setup(
        self,
        setup_token: Optional[str],
        code: Optional[str],
        secret: Optional[str],
        *,
        client_key: Optional[str] = None,
    ) -> User:
        """Persist the user once they prove their authenticator produces valid codes.

        Raises:
            ValidationError: token, code or secret missing
            AuthenticationError: token invalid/expired/used, or code wrong
            ConflictError: the email was registered concurrently
        """
        setup_token, code, secret = _clean(setup_token), _clean(code), _clean(secret)
        if not setup_token or not code or not secret:
            raise ValidationError("Missing required fields")
        claims = await self._verify_token(
            setup_token, (TokenPurpose.SETUP,), "Session expired. Refresh the page."
        )
        if not self.totp.verify_code(secret, code):
            self.logger.info("totp_setup_code_rejected", email=claims.email)
            raise AuthenticationError("Invalid 2FA code")
        if not await self._consume(claims):
            raise AuthenticationError("Session expired. Refresh the page.")
        try:
            user = self.store.create_user(claims.name or claims.email, claims.email, secret)
        except ConstraintViolation:
            raise ConflictError("User already exists")
        if client_key:
            await self.two_factor_limiter.reset(client_key)
        self.logger.info("totp_enrollment_completed", email=user.email, user_id=user.id)
        return user

    # -- login ------------------------------------------------------------

    def _login_link(self, token: str) -> str:
        return f"{self.settings.backend_url}/api/auth/verifyLink?token={quote(token, safe='')}"

    async def request_login_link(self, email: Optional[str]) -> None:
        """Email a magic link to a registered user.

        Raises:
            ValidationError: email missing
            NotFoundError: no account for that email
            ServerError: delivery failed or timed out
        """
        email = _normalize_email(email)
        if not email:
            raise ValidationError("Email is required.")
        user = self.store.get_user_by_email(email)
        if user is None:
            raise NotFoundError("No account found with that email.")

        token = self.tokens.issue({"email": user.email}, TokenPurpose.LOGIN)
        link = self._login_link(token)
        expires_in_minutes = max(1, self.tokens.ttl_seconds // 60)
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(
                    self.email.send_magic_link,
                    user.email,
                    link,
                    expires_in_minutes=expires_in_minutes,
                ),
                timeout=self.settings.email_send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.error("magic_link_send_timeout", email=user.email)
            sent = False
        if not sent:
            raise ServerError("Failed to send login link. Please try again later.")
        self.logger.info("magic_link_sent", email=user.email)

    async def verify_login_link(self, login_token: Optional[str]) -> str:
        """Exchange a login token for a 2FA token and return the client redirect URL."""
        login_token = _clean(login_token)
        if not login_token:
            raise ValidationError("Token is missing")
        claims = await self._verify_token(
            login_token, (TokenPurpose.LOGIN,), "Invalid or expired login link"
        )
        if not await self._consume(claims):
            raise AuthenticationError("Invalid or expired login link")
        two_factor_token = self.tokens.issue({"email": claims.email}, TokenPurpose.TWO_FACTOR)
        self.logger.info("magic_link_verified", email=claims.email)
        return f"{self.settings.client_url}/2fa?token={quote(two_factor_token, safe='')}"

    async def verify_two_factor(
        self,
        token: Optional[str],
        code: Optional[str],
        *,
        current_session_id: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> Session:
        """Check the TOTP code and open a new session, evicting any older one.

        Raises:
            ValidationError: token or code missing
            AuthenticationError: token invalid/expired/used, or code wrong
            NotFoundError: the account behind the token no longer exists
            ServerError: the session store failed
        """
        token, code = _clean(token), _clean(code)
        if not token or not code:
            raise ValidationError("Missing token or 2FA code")
        claims = await self._verify_token(
            token, (TokenPurpose.TWO_FACTOR,), "Invalid or expired token. Refresh the page."
        )
        user = self.store.get_user_by_email(claims.email)
        if user is None:
            raise NotFoundError("User not found")
        if not self.totp.verify_code(user.totp_secret, code):
            self.logger.info("totp_login_code_rejected", email=user.email)
            raise AuthenticationError("Invalid 2FA code")
        if not await self._consume(claims):
            raise AuthenticationError("Invalid or expired token. Refresh the page.")

        try:
            session = await self.sessions.create(user.email, previous_session_id=current_session_id)
        except CacheUnavailable as exc:
            self.logger.error("session_regenerate_failed", email=user.email, error=str(exc))
            raise ServerError("Failed to regenerate session")
        if client_key:
            await self.two_factor_limiter.reset(client_key)
        self.logger.info("login_completed", email=user.email, user_id=user.id)
        return session

    async def validate_token(self, token: Optional[str]) -> bool:
        """Read-only check used by the client before showing the code form."""
        token = _clean(token)
        if not token:
            raise ValidationError("Token missing")
        await self._verify_token(
            token, (TokenPurpose.TWO_FACTOR, TokenPurpose.SETUP), "Token expired or invalid"
        )
        return True

    # -- sessions ---------------------------------------------------------

    async def logout(self, session_id: Optional[str]) -> None:
        try:
            await self.sessions.destroy(session_id)
        except CacheUnavailable as exc:
            self.logger.error("logout_failed", error=str(exc))
            raise ServerError("Logout failed")

    async def current_session(self, session_id: Optional[str]) -> Session:
        try:
            session = await self.sessions.resolve(session_id)
        except CacheUnavailable as exc:
            self.logger.error("session_lookup_failed", error=str(exc))
            raise ServerError("Session lookup failed")
        if session is None:
            raise AuthenticationError("Not authenticated")
        return session
