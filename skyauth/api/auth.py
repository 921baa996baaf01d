"""Authentication API endpoints."""

import logging
import time
from collections import defaultdict
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.core import get_db
from skyauth.core.config import Settings
from skyauth.core.request_utils import get_client_ip, get_user_agent
from skyauth.models.account import Account
from skyauth.schemas.auth import (
    AccountResponse,
    ChangePasswordRequest,
    ChangePasswordResponse,
    CsrfTokenResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    ResetPasswordRequest,
    VerificationStatusResponse,
    VerifyEmailRequest,
    VerifyTwoFactorLoginRequest,
)
from skyauth.services.auth import AuthService, IssuedSession
from skyauth.services.email_verification import EmailVerificationService
from skyauth.services.errors import (
    InvalidCredentialsError,
    LoginRateLimitedError,
    TokenInvalidError,
)
from skyauth.services.mail import Mailer
from skyauth.services.password_policy import UserContext, validate_password
from skyauth.services.password_reset import PasswordResetService
from skyauth.services.tokens import TokenPayload, verify_token
from skyauth.services.two_factor import TwoFactorService

logger = logging.getLogger(__name__)

# Failed login attempts per client IP (monotonic timestamps)
_login_attempts: dict[str, list[float]] = defaultdict(list)


def _check_login_rate_limit(client_ip: str, settings: Settings) -> None:
    """Check if a client IP has exceeded the failed-login rate limit."""
    now = time.monotonic()
    recent = [
        t for t in _login_attempts.get(client_ip, ()) if now - t < settings.login_window_seconds
    ]
    if not recent:
        # Drop idle IPs so the table only holds addresses with recent failures
        _login_attempts.pop(client_ip, None)
        return
    _login_attempts[client_ip] = recent
    if len(recent) >= settings.login_max_attempts:
        logger.warning("Login rate limit exceeded for %s", client_ip)
        raise LoginRateLimitedError()


def _record_login_attempt(client_ip: str) -> None:
    """Record a failed login attempt for rate limiting."""
    _login_attempts[client_ip].append(time.monotonic())


def reset_login_rate_limits() -> None:
    _login_attempts.clear()


router = APIRouter(prefix="/auth", tags=["auth"])


def get_app_settings(request: Request) -> Settings:
    """Dependency returning the settings the application was built with."""
    return request.app.state.settings


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db, settings)


def _extract_session_token(request: Request, settings: Settings) -> str | None:
    """Bearer token when an Authorization header is sent, else the session cookie.

    A Bearer header is used exclusively: a bad Bearer token never falls back
    to the cookie.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(settings.session_cookie_name)


async def get_current_session(
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenPayload:
    """Dependency verifying the caller's session token and revocation status."""
    token = _extract_session_token(request, auth_service.settings)
    if not token:
        raise TokenInvalidError("Authentication required")

    payload = await auth_service.authenticate_token(token)
    await auth_service.store.touch(payload.jti)
    return payload


async def get_current_account(
    payload: TokenPayload = Depends(get_current_session),
    auth_service: AuthService = Depends(get_auth_service),
) -> Account:
    """Dependency to get the current authenticated account."""
    account = await auth_service.get_account_by_id(payload.subject_id)
    if (
        account is None
        or not account.is_active
        or account.subject_type != payload.subject_type.value
    ):
        raise TokenInvalidError()
    return account


def set_session_cookies(response: Response, settings: Settings, issued: IssuedSession) -> None:
    """Attach the session (and, for remember-me, refresh) cookies."""
    response.set_cookie(
        settings.session_cookie_name,
        issued.session_token,
        max_age=settings.remember_me_ttl_days * 24 * 60 * 60,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )
    if issued.refresh_token:
        response.set_cookie(
            settings.refresh_cookie_name,
            issued.refresh_token,
            max_age=issued.refresh_max_age,
            path="/",
            domain=settings.cookie_domain,
            secure=settings.is_production,
            httponly=True,
            samesite="lax",
        )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.session_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            name,
            path="/",
            domain=settings.cookie_domain,
            secure=settings.is_production,
            httponly=True,
            samesite="lax",
        )


def _session_response(account: Account, issued: IssuedSession) -> LoginResponse:
    return LoginResponse(
        expires_at=issued.expires_at,
        account=AccountResponse.model_validate(account),
    )


@router.post("/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    http_request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Authenticate with email and password.

    Accounts with 2FA enabled get a short-lived challenge token instead of a
    session; it is exchanged at /auth/verify-2fa. Rate limited per IP on
    failed attempts.
    """
    settings = auth_service.settings
    # Refuse before touching credentials when tokens cannot be signed
    _ = auth_service.signing_secret

    client_ip = get_client_ip(http_request) or "unknown"
    _check_login_rate_limit(client_ip, settings)

    try:
        account = await auth_service.authenticate(request.email, request.password)
    except InvalidCredentialsError:
        _record_login_attempt(client_ip)
        logger.warning("Failed login attempt from %s", client_ip)
        raise

    if account.totp_enabled:
        two_factor = TwoFactorService.from_settings(db, settings)
        challenge_token = await two_factor.create_challenge(account, request.remember_me)
        logger.info(f"Password accepted for account {account.id}; awaiting second factor")
        return LoginResponse(requires_2fa=True, challenge_token=challenge_token)

    issued = await auth_service.issue_session(
        account,
        remember_me=request.remember_me,
        ip_address=client_ip,
        user_agent=get_user_agent(http_request),
    )
    set_session_cookies(response, settings, issued)
    logger.info(f"Account logged in: {account.id}")
    return _session_response(account, issued)


@router.post("/verify-2fa", response_model=LoginResponse)
async def verify_two_factor_login(
    request: VerifyTwoFactorLoginRequest,
    http_request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Complete a login with a TOTP or backup code."""
    settings = auth_service.settings
    client_ip = get_client_ip(http_request) or "unknown"

    two_factor = TwoFactorService.from_settings(db, settings)
    account, remember_me = await two_factor.complete_challenge(
        request.challenge_token, request.code, client_ip
    )

    issued = await auth_service.issue_session(
        account,
        remember_me=remember_me,
        ip_address=client_ip,
        user_agent=get_user_agent(http_request),
    )
    set_session_cookies(response, settings, issued)
    logger.info(f"Account logged in with second factor: {account.id}")
    return _session_response(account, issued)


@router.post("/refresh", response_model=LoginResponse)
async def refresh_session(
    http_request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Exchange the refresh cookie for a new session (token rotation)."""
    settings = auth_service.settings
    refresh_token = http_request.cookies.get(settings.refresh_cookie_name)
    if not refresh_token:
        raise TokenInvalidError("Refresh token missing")

    account, issued = await auth_service.rotate_refresh_token(
        refresh_token,
        ip_address=get_client_ip(http_request),
        user_agent=get_user_agent(http_request),
    )
    set_session_cookies(response, settings, issued)
    return _session_response(account, issued)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    http_request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Log out: revoke the session and refresh tokens and clear the cookies.

    Tokens that no longer verify are simply dropped with the cookies.
    """
    settings = auth_service.settings
    secret = auth_service.signing_secret
    now = datetime.now(UTC)

    session_token = _extract_session_token(http_request, settings)
    if session_token:
        payload = verify_token(session_token, secret).payload
        if payload is not None and payload.kind == "session":
            await auth_service.store.revoke_session(
                payload.jti,
                payload.subject_id,
                payload.subject_type.value,
                reason="logout",
                ttl=payload.expires_at - now,
            )
            logger.info(f"Logged out {payload.subject_type.value}:{payload.subject_id}")

    refresh_token = http_request.cookies.get(settings.refresh_cookie_name)
    if refresh_token:
        payload = verify_token(refresh_token, secret).payload
        if payload is not None and payload.kind == "refresh":
            await auth_service.store.blacklist(
                payload.jti,
                payload.subject_id,
                payload.subject_type.value,
                reason="logout",
                ttl=payload.expires_at - now,
            )
            await auth_service.store.revoke_refresh_tokens(
                payload.subject_id, payload.subject_type.value, reason="logout", jti=payload.jti
            )

    clear_session_cookies(response, settings)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=AccountResponse)
async def get_current_account_info(
    current_account: Account = Depends(get_current_account),
) -> AccountResponse:
    """Get the current account's information."""
    return AccountResponse.model_validate(current_account)


@router.get("/csrf-token", response_model=CsrfTokenResponse)
async def get_csrf_token(http_request: Request) -> CsrfTokenResponse:
    """Return the CSRF token; the middleware sets the cookie when it is new."""
    return CsrfTokenResponse(csrf_token=http_request.state.csrf_token)


@router.post("/change-password", response_model=ChangePasswordResponse)
async def change_password(
    request: ChangePasswordRequest,
    payload: TokenPayload = Depends(get_current_session),
    current_account: Account = Depends(get_current_account),
    auth_service: AuthService = Depends(get_auth_service),
) -> ChangePasswordResponse:
    """Change the current account's password.

    Every other session of the account is revoked; the current one stays valid.
    """
    revoked = await auth_service.change_password(
        current_account,
        current_password=request.current_password,
        new_password=request.new_password,
        current_jti=payload.jti,
    )
    return ChangePasswordResponse(
        message="Password changed successfully",
        sessions_revoked=revoked,
    )


@router.post("/password-strength", response_model=PasswordStrengthResponse)
async def check_password_strength(request: PasswordStrengthRequest) -> PasswordStrengthResponse:
    """Score a candidate password without storing anything."""
    context = None
    if request.email or request.name:
        context = UserContext(email=request.email, name=request.name)
    result = validate_password(request.password, user_context=context)
    return PasswordStrengthResponse(
        valid=result.valid,
        errors=result.errors,
        strength=result.strength,
        score=result.score,
    )


FORGOT_PASSWORD_MESSAGE = "If the email address is registered, a reset link is on its way."


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    request: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    mailer: Mailer = Depends(get_mailer),
) -> MessageResponse:
    """Email a password reset link.

    The answer is the same whether or not the address has an account.
    """
    await PasswordResetService(db, settings, mailer).request_reset(request.email)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    request: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    mailer: Mailer = Depends(get_mailer),
) -> MessageResponse:
    """Set a new password with an emailed reset token; signs out every device."""
    await PasswordResetService(db, settings, mailer).redeem_reset(
        request.token, request.new_password
    )
    return MessageResponse(message="Password updated. You can now sign in with the new password.")


@router.post("/send-verification", response_model=VerificationStatusResponse)
async def send_verification_email(
    current_account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    mailer: Mailer = Depends(get_mailer),
) -> VerificationStatusResponse:
    """Email the current account a link confirming its address."""
    status = await EmailVerificationService(db, settings, mailer).send_verification(
        current_account
    )
    return VerificationStatusResponse(status=status.value)


@router.post("/verify-email", response_model=VerificationStatusResponse)
async def verify_email(
    request: VerifyEmailRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    mailer: Mailer = Depends(get_mailer),
) -> VerificationStatusResponse:
    status = await EmailVerificationService(db, settings, mailer).verify(request.token)
    return VerificationStatusResponse(status=status.value)
