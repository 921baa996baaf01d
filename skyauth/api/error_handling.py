"""Render authentication errors as ``{"detail", "code"}`` JSON bodies."""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from skyauth.services.errors import AuthError, CsrfError, PasswordTooWeakError

logger = logging.getLogger(__name__)


def error_body(exc: AuthError) -> dict[str, Any]:
    body: dict[str, Any] = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, PasswordTooWeakError):
        body["reasons"] = exc.reasons
    elif isinstance(exc, CsrfError):
        body["reason"] = exc.reason
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handler shared by every router."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
        log_fn = logger.error if exc.status_code >= 500 else logger.info
        log_fn(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=headers)
