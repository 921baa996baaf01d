"""Middleware module for Sky Planner Auth."""

from skyauth.middleware.csrf import CSRFMiddleware
from skyauth.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "CSRFMiddleware",
    "SecurityHeadersMiddleware",
]
