"""Pytest configuration and fixtures.

Tests run against a throwaway SQLite database (aiosqlite) per test function.
Every store query uses portable SQLAlchemy constructs, with the dialect-specific
insert chosen at runtime, so the same code paths run as on PostgreSQL.
"""

import os
import re
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import NullPool

# Set test environment variables before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-" + "0" * 48
os.environ["TOTP_ENCRYPTION_KEY"] = "test-totp-key-" + "1" * 50
os.environ["TOTP_ENCRYPTION_SALT"] = "test-totp-salt-0123"
os.environ["BACKUP_CODE_SALT"] = "test-backup-salt-0123"

from skyauth.api.auth import reset_login_rate_limits  # noqa: E402
from skyauth.core.config import Settings  # noqa: E402
from skyauth.core.database import Database  # noqa: E402
from skyauth.main import create_app  # noqa: E402
from skyauth.models.account import Account  # noqa: E402
from skyauth.services.auth import AuthService  # noqa: E402
from skyauth.services.mail import OutgoingEmail  # noqa: E402
from skyauth.services.tokens import SubjectType  # noqa: E402

TEST_PASSWORD = "Fjord-Lantern-47!"
TEST_BASE_URL = "http://test"

AccountFactory = Callable[..., Awaitable[Account]]


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Clear the per-IP failed login counters between tests."""
    reset_login_rate_limits()
    yield
    reset_login_rate_limits()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}",
        jwt_secret_key=os.environ["JWT_SECRET_KEY"],
        totp_encryption_key=os.environ["TOTP_ENCRYPTION_KEY"],
        totp_encryption_salt=os.environ["TOTP_ENCRYPTION_SALT"],
        backup_code_salt=os.environ["BACKUP_CODE_SALT"],
        sso_redeem_url=f"{TEST_BASE_URL}/sso/redeem",
        sso_success_path="/dashboard",
        cors_origins=TEST_BASE_URL,
    )


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Connected database with every table created."""
    db = Database(settings.database_url, poolclass=NullPool)
    db.connect()
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


@pytest_asyncio.fixture
async def create_account(settings: Settings, database: Database) -> AccountFactory:
    """Factory creating accounts in their own session."""

    async def _create(
        email: str = "pilot@example.com",
        password: str = TEST_PASSWORD,
        name: str = "Test Pilot",
        subject_type: SubjectType = SubjectType.MEMBER,
        organization_id: uuid.UUID | None = None,
    ) -> Account:
        if subject_type is SubjectType.MEMBER and organization_id is None:
            organization_id = uuid.uuid4()
        async with database.session() as session:
            service = AuthService(session, settings)
            return await service.create_account(
                email=email,
                password=password,
                name=name,
                subject_type=subject_type,
                organization_id=organization_id,
                organization_slug="fjordfly" if organization_id else None,
            )

    return _create


class RecordingMailer:
    """Keeps sent messages instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[OutgoingEmail] = []

    async def send(self, message: OutgoingEmail) -> None:
        self.sent.append(message)

    def last_token(self) -> str:
        """The ``token`` query parameter of the link in the latest message."""
        match = re.search(r"[?&]token=([A-Za-z0-9_\-]+)", self.sent[-1].body)
        assert match, self.sent[-1].body
        return match.group(1)


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def app(settings: Settings, database: Database, mailer: RecordingMailer) -> FastAPI:
    return create_app(settings=settings, database=database, mailer=mailer)


@pytest_asyncio.fixture
async def raw_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Client without a CSRF token."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url=TEST_BASE_URL) as ac:
        yield ac


async def prime_csrf(client: AsyncClient) -> AsyncClient:
    """Fetch a CSRF cookie and send the matching header from now on."""
    response = await client.get("/auth/csrf-token")
    assert response.status_code == 200
    client.headers["X-CSRF-Token"] = response.json()["csrf_token"]
    return client


@pytest_asyncio.fixture
async def async_client(raw_client: AsyncClient) -> AsyncClient:
    """Client holding a CSRF cookie and sending the matching header."""
    return await prime_csrf(raw_client)


async def login(client: AsyncClient, email: str, password: str = TEST_PASSWORD, **extra):
    """Log in through the API and return the response."""
    return await client.post(
        "/auth/login", json={"email": email, "password": password, **extra}
    )


@pytest_asyncio.fixture
async def member(create_account: AccountFactory) -> Account:
    return await create_account()


@pytest_asyncio.fixture
async def logged_in_client(async_client: AsyncClient, member: Account) -> AsyncClient:
    response = await login(async_client, member.email)
    assert response.status_code == 200, response.text
    return async_client
