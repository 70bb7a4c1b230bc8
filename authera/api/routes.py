from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from authera.api.error_handling import error_response
from authera.api.schemas import (
    ConfirmTwoFactorRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    SetupTwoFactorResponse,
    ValidateTokenRequest,
    ValidateTokenResponse,
    VerifyTwoFactorRequest,
    VerifyTwoFactorResponse,
)
from authera.logging import get_logger
from authera.service.errors import RateLimitedError, ServerError, ServiceError
from authera.service.rate_limit import RATE_LIMIT_MESSAGE, RateLimiter
from authera.service.runtime import get_runtime
from authera.storage.models import Session

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def client_key(request: Request) -> str:
    """Identify the caller for rate limiting.

    ``X-Forwarded-For`` is only honoured behind a trusted proxy; otherwise a
    client could pick its own bucket.
    """
    settings = get_runtime().settings
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(limiter: RateLimiter, request: Request, response: Response) -> None:
    """Consume one attempt for the caller.

    Raises:
        RateLimitedError: the caller is over the limit for the current window
    """
    decision = await limiter.consume(client_key(request))
    if not decision.allowed:
        raise RateLimitedError(
            RATE_LIMIT_MESSAGE,
            headers={
                "Retry-After": str(decision.retry_after),
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(decision.retry_after),
            },
        )
    decision.apply_headers(response)


async def generic_rate_limit(request: Request, response: Response) -> None:
    await _enforce_rate_limit(get_runtime().generic_limiter, request, response)


async def two_factor_rate_limit(request: Request, response: Response) -> None:
    await _enforce_rate_limit(get_runtime().two_factor_limiter, request, response)


def _apply_session_cookie(response: Response, session: Session) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.session_cookie_name,
        session.id,
        max_age=settings.session_ttl_seconds,
        expires=session.expires_at,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        domain=settings.cookie_domain,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite,
    )


def _session_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(get_runtime().settings.session_cookie_name)


async def get_current_session(request: Request) -> Session:
    """Resolve the session cookie or fail with 401."""
    return await get_runtime().auth.current_session(_session_cookie(request))


@router.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(generic_rate_limit)],
)
async def register(body: RegisterRequest):
    """Start registration and return a setup token.

    Raises:
        400: name or email missing or malformed
        409: an account with that email already exists
        429: too many attempts from this client
    """
    setup_token = await get_runtime().auth.register(body.name, body.email)
    return RegisterResponse(message="Token sent", setupToken=setup_token)


@router.get("/auth/setup-2fa", response_model=SetupTwoFactorResponse, tags=["auth"])
async def setup_two_factor(
    token: Optional[str] = Query(None),
    x_setup_token: Optional[str] = Header(None, alias="X-Setup-Token"),
):
    """Return a fresh TOTP secret with its QR code.

    The setup token may come from ``?token=`` or the ``X-Setup-Token`` header.
    Nothing is stored until the enrollment is confirmed.
    """
    data = await get_runtime().auth.setup_two_factor(token or x_setup_token)
    return SetupTwoFactorResponse(**data)


@router.post(
    "/auth/confirm-2fa-setup",
    response_model=MessageResponse,
    tags=["auth"],
    dependencies=[Depends(two_factor_rate_limit)],
)
async def confirm_two_factor_setup(body: ConfirmTwoFactorRequest, request: Request):
    """Create the account once the first TOTP code checks out.

    Raises:
        400: token, code or base32 missing
        401: setup token invalid/expired, or code wrong
        409: account created concurrently
        429: too many attempts from this client
    """
    await get_runtime().auth.confirm_two_factor_setup(
        body.token, body.code, body.base32, client_key=client_key(request)
    )
    return MessageResponse(message="2FA setup complete. Kindly log in.")


@router.post(
    "/auth/login",
    response_model=MessageResponse,
    tags=["auth"],
    dependencies=[Depends(generic_rate_limit)],
)
async def login(body: LoginRequest):
    """Email a magic link to a registered address.

    Raises:
        400: email missing or malformed
        404: no account with that email
        429: too many attempts from this client
        500: the email could not be delivered
    """
    await get_runtime().auth.request_login_link(body.email)
    return MessageResponse(message="Login link sent! Check your inbox.")


@router.get("/auth/verifyLink", tags=["auth"], response_class=PlainTextResponse)
async def verify_link(token: Optional[str] = Query(None)):
    """Consume the magic link and redirect the browser to the 2FA page.

    Errors are plain text because this URL is opened straight from the email.
    """
    try:
        redirect_url = await get_runtime().auth.verify_login_link(token)
    except ServiceError as exc:
        logger.info("magic_link_rejected", status_code=exc.status_code, message=exc.message)
        return PlainTextResponse(exc.message, status_code=exc.status_code)
    return RedirectResponse(redirect_url, status_code=302)


@router.post(
    "/auth/verify2FA",
    response_model=VerifyTwoFactorResponse,
    tags=["auth"],
    dependencies=[Depends(two_factor_rate_limit)],
)
async def verify_two_factor(body: VerifyTwoFactorRequest, request: Request, response: Response):
    """Check the TOTP code and establish the session cookie.

    Any session id the browser already holds is discarded and replaced, and
    the user's previous session elsewhere is ended.

    Raises:
        400: token or code missing
        401: token invalid/expired, or code wrong
        404: account no longer exists
        429: too many attempts from this client
        500: the session store failed
    """
    session = await get_runtime().auth.verify_two_factor(
        body.token,
        body.code,
        current_session_id=_session_cookie(request),
        client_key=client_key(request),
    )
    _apply_session_cookie(response, session)
    return VerifyTwoFactorResponse(message="2FA verified successfully", redirectTo="/dashboard")


@router.post("/auth/validate-2fa-token", response_model=ValidateTokenResponse, tags=["auth"])
async def validate_two_factor_token(body: ValidateTokenRequest):
    """Report whether a 2FA or setup token is still usable. Has no side effects."""
    await get_runtime().auth.validate_token(body.token)
    return ValidateTokenResponse(valid=True)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(request: Request, response: Response):
    """End the current session. Succeeds even if there is none; the cookie is always cleared."""
    try:
        await get_runtime().auth.logout(_session_cookie(request))
    except ServerError as exc:
        failed = error_response(exc.status_code, exc.message, code=exc.error_code)
        _clear_session_cookie(failed)
        return failed
    _clear_session_cookie(response)
    return MessageResponse(message="Logged out successfully")


@router.get("/dashboard/home", response_model=MessageResponse, tags=["dashboard"])
async def dashboard_home(session: Session = Depends(get_current_session)):
    return MessageResponse(message=f"Hello, {session.email}!")
