"""Sky Planner Auth Database - explicitly constructed async SQLAlchemy handle."""

from collections.abc import AsyncGenerator
from typing import Any

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from skyauth.core.config import Settings
from skyauth.core.logging import get_logger

logger = get_logger("database")

# Base class for models
Base = declarative_base()


class DatabaseNotConnectedError(RuntimeError):
    """Raised when a session is requested before connect() or after dispose()."""


class Database:
    """Owns the engine and session factory for one application instance.

    The handle is created by the application factory (or a test fixture),
    opened with connect() during startup and closed with dispose() on
    shutdown. Nothing in the package holds a module-level engine.
    """

    def __init__(self, url: str, **engine_kwargs: Any):
        self.url = url
        self._engine_kwargs = engine_kwargs
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Build a handle using the pool options from settings.

        Connection pool settings are configurable via environment variables:
        DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_TIMEOUT and DB_POOL_RECYCLE.
        """
        kwargs: dict[str, Any] = {
            "pool_pre_ping": True,
            "echo": settings.debug and settings.log_level == "DEBUG",
        }
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
            )
        return cls(settings.database_url, **kwargs)

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseNotConnectedError("Database is not connected")
        return self._engine

    def connect(self) -> None:
        """Create the engine and session factory. Safe to call twice."""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url, **self._engine_kwargs)
        self._session_maker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database engine created")

    async def dispose(self) -> None:
        """Close all pooled connections."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_maker = None
        logger.info("Database engine disposed")

    def session(self) -> AsyncSession:
        """Open a new session. Use as an async context manager."""
        if self._session_maker is None:
            raise DatabaseNotConnectedError("Database is not connected")
        return self._session_maker()

    async def create_all(self) -> None:
        """Create every table known to the model metadata."""
        # Registers the model classes on Base.metadata
        import skyauth.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def check_connection(self) -> bool:
        """Check if the database is reachable."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except (OSError, ConnectionError) as e:
            logger.debug(f"Database connection check failed: {e}")
            return False
        except (SQLAlchemyError, DatabaseNotConnectedError) as e:
            logger.warning(f"Unexpected error checking database connection: {e}")
            return False


def get_database(request: Request) -> Database:
    """Dependency returning the handle attached to the running application."""
    return request.app.state.database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with get_database(request).session() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            # Includes asyncio.CancelledError so rollback happens on cancellation
            await session.rollback()
            raise
