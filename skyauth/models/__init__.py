# Sky Planner Auth Models
from skyauth.models.account import Account
from skyauth.models.active_session import ActiveSession
from skyauth.models.base import BaseModel
from skyauth.models.password_reset_token import PasswordResetToken
from skyauth.models.refresh_token import RefreshToken
from skyauth.models.sso_token import SsoToken
from skyauth.models.token_blacklist import TokenBlacklist
from skyauth.models.totp_audit_log import TotpAuditLog
from skyauth.models.totp_challenge import TotpChallenge

__all__ = [
    "Account",
    "ActiveSession",
    "BaseModel",
    "PasswordResetToken",
    "RefreshToken",
    "SsoToken",
    "TokenBlacklist",
    "TotpAuditLog",
    "TotpChallenge",
]
