# Sky Planner Auth Pydantic Schemas
from skyauth.schemas.auth import (
    AccountResponse,
    ChangePasswordRequest,
    ChangePasswordResponse,
    CsrfTokenResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    VerifyTwoFactorLoginRequest,
)
from skyauth.schemas.sessions import (
    ActiveSessionListResponse,
    ActiveSessionResponse,
    TerminateSessionRequest,
)
from skyauth.schemas.two_factor import (
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)

__all__ = [
    "AccountResponse",
    "ActiveSessionListResponse",
    "ActiveSessionResponse",
    "ChangePasswordRequest",
    "ChangePasswordResponse",
    "CsrfTokenResponse",
    "LoginRequest",
    "LoginResponse",
    "MessageResponse",
    "PasswordStrengthRequest",
    "PasswordStrengthResponse",
    "TerminateSessionRequest",
    "TwoFactorDisableRequest",
    "TwoFactorSetupResponse",
    "TwoFactorStatusResponse",
    "TwoFactorVerifyRequest",
]
