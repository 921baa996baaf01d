"""Sky Planner Auth - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from skyauth.api import api_router
from skyauth.api.error_handling import register_exception_handlers
from skyauth.core import Database, get_settings, setup_logging
from skyauth.core.config import Settings
from skyauth.core.logging import get_logger
from skyauth.middleware import CSRFMiddleware, SecurityHeadersMiddleware
from skyauth.services.mail import LoggingMailer, Mailer
from skyauth.services.password_reset import cleanup_expired_reset_tokens
from skyauth.services.sessions import SessionStore
from skyauth.services.sso import SsoService
from skyauth.services.two_factor import cleanup_expired_challenges

logger = get_logger("main")

CLEANUP_INTERVAL_SECONDS = 300


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


async def cleanup_expired_records(database: Database) -> int:
    """Delete expired revocation entries, sessions, one-time tokens and 2FA challenges."""
    async with database.session() as db:
        removed = await SessionStore(db).cleanup_expired()
        removed += await SsoService(db).cleanup_expired()
        removed += await cleanup_expired_challenges(db)
        removed += await cleanup_expired_reset_tokens(db)
    return removed


async def _cleanup_loop(database: Database) -> None:
    """Periodically remove expired security records."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        try:
            removed = await cleanup_expired_records(database)
            if removed > 0:
                logger.info(f"Cleaned up {removed} expired security records")
        except SQLAlchemyError:
            logger.exception("Error cleaning up expired security records")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings
    database: Database = app.state.database

    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    database.connect()
    if settings.db_create_tables:
        await database.create_all()

    cleanup_task = asyncio.create_task(_cleanup_loop(database), name="security-record-cleanup")
    cleanup_task.add_done_callback(task_done_callback)

    yield

    # Shutdown
    logger.info("Shutting down...")
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    await database.dispose()


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    mailer: Mailer | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without a ``mailer`` outgoing reset and verification emails are only logged.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Authentication and session security for Sky Planner",
        version=settings.app_version,
        lifespan=lifespan,
        # OpenAPI docs only in debug; they list every auth endpoint and schema
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    app.state.database = database or Database.from_settings(settings)
    app.state.mailer = mailer or LoggingMailer()

    register_exception_handlers(app)

    # CSRF double-submit check for cookie-authenticated mutating requests
    app.add_middleware(
        CSRFMiddleware,
        exempt_paths=settings.csrf_exempt_paths,
        cookie_name=settings.csrf_cookie_name,
        header_name=settings.csrf_header_name,
        samesite=settings.csrf_cookie_samesite,
        secure=settings.is_production,
        max_age=settings.csrf_cookie_max_age,
        cookie_domain=settings.cookie_domain,
        credential_cookies=(settings.session_cookie_name, settings.refresh_cookie_name),
    )

    # Security headers middleware (outside CSRF so its 403s carry the headers too)
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on ALL responses, including CSRF 403s.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            settings.csrf_header_name,
        ],
    )

    # Prometheus metrics (before routers so /metrics endpoint is registered first)
    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            excluded_handlers=["/health", "/metrics"],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    app.include_router(api_router)

    return app


# Application instance
app = create_app()
