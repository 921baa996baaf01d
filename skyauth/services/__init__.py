# Sky Planner Auth Services
from skyauth.services.audit import AuditAction, AuditService
from skyauth.services.auth import AuthService, IssuedSession, hash_password, verify_password
from skyauth.services.errors import AuthError
from skyauth.services.sessions import SessionStore
from skyauth.services.sso import SsoService
from skyauth.services.two_factor import TotpSecrets, TwoFactorService, totp_status

__all__ = [
    "AuditAction",
    "AuditService",
    "AuthError",
    "AuthService",
    "IssuedSession",
    "SessionStore",
    "SsoService",
    "TotpSecrets",
    "TwoFactorService",
    "hash_password",
    "totp_status",
    "verify_password",
]
