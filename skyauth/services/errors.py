"""Authentication error taxonomy.

Every error carries an HTTP status and a stable machine-readable code. The
API layer renders them as ``{"detail": message, "code": code}``. Credential
failures share one generic message so responses never reveal which check
failed.
"""

GENERIC_AUTH_MESSAGE = "Authentication failed"


class AuthError(Exception):
    """Base authentication error."""

    status_code: int = 401
    code: str = "UNAUTHORIZED"
    message: str = GENERIC_AUTH_MESSAGE

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


# --- Credentials -------------------------------------------------------------


class InvalidCredentialsError(AuthError):
    """Unknown account, wrong password, or inactive account."""

    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password"


class LoginRateLimitedError(AuthError):
    """Too many failed logins from one client IP."""

    status_code = 429
    code = "TOO_MANY_ATTEMPTS"
    message = "Too many login attempts. Please try again later."


# --- Tokens ------------------------------------------------------------------


class TokenError(AuthError):
    """Session token could not be accepted."""

    code = "TOKEN_INVALID"


class TokenExpiredError(TokenError):
    """Token is past its exp claim."""

    code = "TOKEN_EXPIRED"
    message = "Session has expired"


class TokenInvalidError(TokenError):
    """Bad signature, wrong algorithm, or undecodable token."""

    code = "TOKEN_INVALID"


class TokenMalformedError(TokenError):
    """Token verified but lacks a required claim (jti, sub, type)."""

    code = "TOKEN_MALFORMED"


class SessionRevokedError(TokenError):
    """Token's jti is on the revocation blacklist."""

    code = "SESSION_REVOKED"
    message = "Session has been revoked"


# --- Active sessions ---------------------------------------------------------


class SessionNotFoundError(AuthError):
    """Session does not exist or belongs to another subject."""

    status_code = 404
    code = "SESSION_NOT_FOUND"
    message = "Session not found"


class CannotTerminateCurrentSessionError(AuthError):
    """The caller tried to terminate the session it is using; logout instead."""

    status_code = 400
    code = "CANNOT_TERMINATE_CURRENT"
    message = "Use logout to end the current session"


# --- CSRF --------------------------------------------------------------------


class CsrfError(AuthError):
    """Double-submit token check failed."""

    status_code = 403
    code = "CSRF_VALIDATION_FAILED"
    reason = "mismatch"


class CsrfMissingError(CsrfError):
    """Cookie or header token absent or not well-formed."""

    reason = "missing"
    message = "CSRF token missing"


class CsrfMismatchError(CsrfError):
    """Cookie and header tokens differ."""

    reason = "mismatch"
    message = "CSRF token mismatch"


# --- Two-factor --------------------------------------------------------------


class TotpError(AuthError):
    """Two-factor authentication error."""

    status_code = 400
    code = "TOTP_ERROR"


class TotpCodeInvalidError(TotpError):
    """Code did not verify, or its time step was already used."""

    status_code = 401
    code = "TOTP_CODE_INVALID"
    message = "Invalid verification code"


class TotpAlreadyEnabledError(TotpError):
    """Setup attempted while 2FA is already on."""

    status_code = 409
    code = "TOTP_ALREADY_ENABLED"
    message = "Two-factor authentication is already enabled"


class TotpNotConfiguredError(TotpError):
    """No secret has been generated, or 2FA is not enabled."""

    code = "TOTP_NOT_CONFIGURED"
    message = "Two-factor authentication is not set up"


class BackupCodeExhaustedError(TotpError):
    """Every backup code has been consumed."""

    status_code = 401
    code = "BACKUP_CODES_EXHAUSTED"
    message = "No backup codes remaining"


class ChallengeAttemptsExceededError(TotpError):
    """Pending login challenge used up its attempts and was discarded."""

    status_code = 429
    code = "TOO_MANY_ATTEMPTS"
    message = "Too many attempts. Please log in again."


# --- SSO ---------------------------------------------------------------------


class SsoError(AuthError):
    """Cross-domain handoff failed."""

    code = "SSO_FAILED"


class SsoTokenExpiredOrUsedError(SsoError):
    """Redemption token unknown, expired, or already redeemed."""

    code = "SSO_TOKEN_EXPIRED_OR_USED"
    message = "Login link has expired or was already used"


class SsoOriginMismatchError(SsoError):
    """Launch request did not come from a page on the same host."""

    status_code = 403
    code = "SSO_ORIGIN_MISMATCH"
    message = "Cross-origin request rejected"


class SsoIpMismatchError(SsoError):
    """Redeeming client IP differs from the issuing client IP."""

    code = "SSO_IP_MISMATCH"
    message = "Login link was issued to a different network"


# --- Passwords ---------------------------------------------------------------


class PasswordTooWeakError(AuthError):
    """New password failed strength validation.

    The reasons are not secret and are returned to the caller.
    """

    status_code = 422
    code = "PASSWORD_TOO_WEAK"
    message = "Password does not meet the requirements"

    def __init__(self, reasons: list[str]):
        super().__init__()
        self.reasons = list(reasons)


class ResetTokenInvalidError(AuthError):
    """Reset token is unknown, expired or already used."""

    status_code = 400
    code = "RESET_TOKEN_INVALID"
    message = "Invalid or expired reset link. Please request a new one."


# --- Email verification ------------------------------------------------------


class VerificationTokenInvalidError(AuthError):
    """Verification token matches no account."""

    status_code = 400
    code = "VERIFICATION_TOKEN_INVALID"
    message = "Invalid verification link"


class VerificationTokenExpiredError(VerificationTokenInvalidError):
    code = "VERIFICATION_TOKEN_EXPIRED"
    message = "Verification link has expired. Please request a new one."


# --- Infrastructure ----------------------------------------------------------


class StoreUnavailableError(AuthError):
    """Revocation or session store could not be queried. Fails closed."""

    status_code = 503
    code = "STORE_UNAVAILABLE"
    message = "Authentication service temporarily unavailable"


class ServiceMisconfiguredError(AuthError):
    """A required server secret is not configured."""

    status_code = 503
    code = "SERVICE_MISCONFIGURED"
    message = "Service is not configured"
