"""Double-submit-cookie CSRF protection.

A random token lives in a cookie that scripts can read; every mutating request
must echo it in the ``X-CSRF-Token`` header. A third-party page can make the
browser send the cookie but cannot read it, so it cannot produce the header.
"""

import logging
import re
import secrets
from collections.abc import Iterable
from typing import Literal

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from skyauth.services.errors import CsrfError, CsrfMismatchError, CsrfMissingError

logger = logging.getLogger(__name__)

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
DEFAULT_EXEMPT_PATHS = ("/sso/redeem",)
DEFAULT_CREDENTIAL_COOKIES = ("skyplanner_session", "skyplanner_refresh")

_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def generate_csrf_token() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def is_well_formed(token: str | None) -> bool:
    return bool(token) and _TOKEN_PATTERN.match(token) is not None


def validate_csrf_tokens(cookie_token: str | None, header_token: str | None) -> None:
    """Compare the cookie and header tokens in constant time.

    Raises:
        CsrfMissingError: Either token is absent or malformed.
        CsrfMismatchError: Both present but different.
    """
    if not is_well_formed(cookie_token) or not is_well_formed(header_token):
        raise CsrfMissingError()
    if not secrets.compare_digest(cookie_token, header_token):
        raise CsrfMismatchError()


def has_non_cookie_credential(request: Request, credential_cookies: Iterable[str] = ()) -> bool:
    """True when the request authenticates without ambient browser credentials.

    A Bearer header always qualifies: it replaces the session cookie outright.
    An X-API-Key header only qualifies when no credential cookie rides along,
    otherwise adding the header would switch the check off for a cookie session.
    """
    if request.headers.get("Authorization", "").startswith("Bearer "):
        return True
    if request.headers.get("X-API-Key"):
        return not any(request.cookies.get(name) for name in credential_cookies)
    return False


class CSRFMiddleware(BaseHTTPMiddleware):
    """Reject mutating requests whose CSRF header does not match the cookie.

    - Safe methods always pass, and get a cookie if they lack one
    - Requests carrying a Bearer token are exempt, and so are X-API-Key
      requests that carry no session or refresh cookie
    - Exempt paths match exactly or on a segment boundary
    - Failures return 403 with code CSRF_VALIDATION_FAILED
    """

    def __init__(
        self,
        app: ASGIApp,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        cookie_name: str = CSRF_COOKIE_NAME,
        header_name: str = CSRF_HEADER_NAME,
        samesite: Literal["strict", "lax"] = "strict",
        secure: bool = False,
        max_age: int = 24 * 60 * 60,
        cookie_domain: str | None = None,
        credential_cookies: Iterable[str] = DEFAULT_CREDENTIAL_COOKIES,
    ):
        super().__init__(app)
        self.credential_cookies = tuple(credential_cookies)
        self.exempt_paths = tuple(exempt_paths)
        self.cookie_name = cookie_name
        self.header_name = header_name
        self.samesite = samesite
        self.secure = secure
        self.max_age = max_age
        self.cookie_domain = cookie_domain

    def _is_exempt_path(self, path: str) -> bool:
        for exempt in self.exempt_paths:
            if path == exempt or path.startswith(exempt + "/"):
                return True
        return False

    def _set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            self.cookie_name,
            token,
            max_age=self.max_age,
            path="/",
            domain=self.cookie_domain,
            secure=self.secure,
            httponly=False,
            samesite=self.samesite,
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        cookie_token = request.cookies.get(self.cookie_name)
        has_cookie = is_well_formed(cookie_token)
        request.state.csrf_token = cookie_token if has_cookie else generate_csrf_token()

        if (
            request.method not in SAFE_METHODS
            and not has_non_cookie_credential(request, self.credential_cookies)
            and not self._is_exempt_path(request.url.path)
        ):
            try:
                validate_csrf_tokens(cookie_token, request.headers.get(self.header_name))
            except CsrfError as e:
                logger.warning(
                    f"CSRF validation failed ({e.reason}): {request.method} {request.url.path}"
                )
                return JSONResponse(
                    status_code=e.status_code,
                    content={"detail": e.message, "code": e.code, "reason": e.reason},
                )

        response = await call_next(request)

        if not has_cookie:
            self._set_cookie(response, request.state.csrf_token)
        return response
