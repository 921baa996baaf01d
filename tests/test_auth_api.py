"""Tests for authentication endpoints."""

import asyncio
import time
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from skyauth.api.auth import _check_login_rate_limit, _login_attempts
from skyauth.main import create_app
from skyauth.models.account import Account
from skyauth.services.auth import AuthService, subject_for
from skyauth.services.errors import AuthError
from skyauth.services.tokens import sign_token
from tests.conftest import TEST_BASE_URL, TEST_PASSWORD, login, prime_csrf

NEW_PASSWORD = "Harbor#Compass-82"


def session_cookie_header(response) -> str:
    return next(
        c for c in response.headers.get_list("set-cookie") if c.startswith("skyplanner_session=")
    )


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, async_client, member):
        response = await login(async_client, member.email)
        assert response.status_code == 200
        data = response.json()
        assert data["requires_2fa"] is False
        assert data["account"]["email"] == member.email
        assert data["account"]["subject_type"] == "member"

        expires_at = datetime.fromisoformat(data["expires_at"])
        assert timedelta(hours=23) < expires_at - datetime.now(UTC) <= timedelta(hours=24)

        cookie = session_cookie_header(response)
        assert "HttpOnly" in cookie
        assert "SameSite=lax" in cookie
        assert "Secure" not in cookie
        assert "skyplanner_refresh" not in async_client.cookies

    async def test_login_email_is_case_insensitive(self, async_client, member):
        response = await login(async_client, member.email.upper())
        assert response.status_code == 200

    async def test_remember_me_issues_refresh_cookie(self, async_client, member):
        response = await login(async_client, member.email, remember_me=True)
        assert response.status_code == 200
        assert "skyplanner_refresh" in async_client.cookies
        expires_at = datetime.fromisoformat(response.json()["expires_at"])
        assert expires_at - datetime.now(UTC) > timedelta(days=29)

    async def test_wrong_password_and_unknown_email_look_identical(self, async_client, member):
        wrong = await login(async_client, member.email, "Not-The-Password-1")
        unknown = await login(async_client, "nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["code"] == "INVALID_CREDENTIALS"

    async def test_inactive_account(self, async_client, member, db_session):
        await db_session.execute(
            update(Account).where(Account.id == member.id).values(is_active=False)
        )
        await db_session.commit()
        response = await login(async_client, member.email)
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"

    async def test_rate_limit(self, async_client, member):
        for _ in range(5):
            response = await login(async_client, member.email, "Not-The-Password-1")
            assert response.status_code == 401

        response = await login(async_client, member.email)
        assert response.status_code == 429
        assert response.json()["code"] == "TOO_MANY_ATTEMPTS"

    async def test_successful_logins_not_rate_limited(self, async_client, member):
        for _ in range(6):
            assert (await login(async_client, member.email)).status_code == 200

    async def test_idle_ips_are_forgotten(self, settings):
        stale = time.monotonic() - settings.login_window_seconds - 1
        _login_attempts["203.0.113.7"].extend([stale] * settings.login_max_attempts)

        _check_login_rate_limit("203.0.113.7", settings)
        assert "203.0.113.7" not in _login_attempts

    async def test_missing_signing_secret(self, settings, database, member):
        app = create_app(
            settings=settings.model_copy(update={"jwt_secret_key": None}), database=database
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url=TEST_BASE_URL) as ac:
            await prime_csrf(ac)
            response = await login(ac, member.email)
        assert response.status_code == 503
        assert response.json()["code"] == "SERVICE_MISCONFIGURED"


@pytest.mark.asyncio
class TestCurrentSession:
    async def test_me_requires_authentication(self, async_client):
        response = await async_client.get("/auth/me")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test_me_with_cookie(self, logged_in_client, member):
        response = await logged_in_client.get("/auth/me")
        assert response.status_code == 200
        assert response.json()["id"] == str(member.id)

    async def test_me_with_bearer_token(self, logged_in_client):
        token = logged_in_client.cookies.get("skyplanner_session")
        logged_in_client.cookies.clear()
        response = await logged_in_client.get(
            "/auth/me", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 200

    async def test_bad_bearer_does_not_fall_back_to_cookie(self, logged_in_client):
        response = await logged_in_client.get(
            "/auth/me", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_INVALID"

    async def test_expired_token(self, async_client, member, settings):
        past = datetime.now(UTC) - timedelta(days=2)
        token = sign_token(
            subject_for(member), settings.jwt_secret_key, expires_in=timedelta(hours=1), now=past
        )
        response = await async_client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_EXPIRED"

    async def test_refresh_token_is_not_a_session(self, async_client, member, settings):
        token = sign_token(subject_for(member), settings.jwt_secret_key, kind="refresh")
        response = await async_client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_deactivated_account_loses_access(self, logged_in_client, member, db_session):
        await db_session.execute(
            update(Account).where(Account.id == member.id).values(is_active=False)
        )
        await db_session.commit()
        assert (await logged_in_client.get("/auth/me")).status_code == 401


@pytest.mark.asyncio
class TestLogout:
    async def test_logout_revokes_token(self, logged_in_client):
        token = logged_in_client.cookies.get("skyplanner_session")

        response = await logged_in_client.post("/auth/logout")
        assert response.status_code == 200
        assert "skyplanner_session" not in logged_in_client.cookies

        response = await logged_in_client.get(
            "/auth/me", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_REVOKED"

    async def test_logout_revokes_refresh_token(self, async_client, member):
        await login(async_client, member.email, remember_me=True)
        refresh = async_client.cookies.get("skyplanner_refresh")

        await async_client.post("/auth/logout")

        async_client.cookies.set("skyplanner_refresh", refresh)
        response = await async_client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_REVOKED"

    async def test_logout_without_session(self, async_client):
        response = await async_client.post("/auth/logout")
        assert response.status_code == 200


@pytest.mark.asyncio
class TestRefresh:
    async def test_rotation(self, async_client, member):
        await login(async_client, member.email, remember_me=True)
        old_refresh = async_client.cookies.get("skyplanner_refresh")
        old_session = async_client.cookies.get("skyplanner_session")

        response = await async_client.post("/auth/refresh")
        assert response.status_code == 200
        assert async_client.cookies.get("skyplanner_refresh") != old_refresh
        assert async_client.cookies.get("skyplanner_session") != old_session
        assert (await async_client.get("/auth/me")).status_code == 200

        # Each refresh token works once
        async_client.cookies.delete("skyplanner_refresh")
        async_client.cookies.set("skyplanner_refresh", old_refresh)
        response = await async_client.post("/auth/refresh")
        assert response.status_code == 401

    async def test_reused_refresh_token_revokes_everything(self, async_client, member):
        await login(async_client, member.email, remember_me=True)
        stolen = async_client.cookies.get("skyplanner_refresh")
        assert (await async_client.post("/auth/refresh")).status_code == 200
        current_refresh = async_client.cookies.get("skyplanner_refresh")

        async_client.cookies.delete("skyplanner_refresh")
        async_client.cookies.set("skyplanner_refresh", stolen)
        response = await async_client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_REVOKED"

        # The legitimate holder is logged out too
        assert (await async_client.get("/auth/me")).status_code == 401
        async_client.cookies.delete("skyplanner_refresh")
        async_client.cookies.set("skyplanner_refresh", current_refresh)
        assert (await async_client.post("/auth/refresh")).status_code == 401

    async def test_terminated_device_cannot_refresh(self, app, logged_in_client, member):
        async with AsyncClient(transport=ASGITransport(app=app), base_url=TEST_BASE_URL) as other:
            await prime_csrf(other)
            assert (await login(other, member.email, remember_me=True)).status_code == 200

            sessions = (await logged_in_client.get("/sessions")).json()["sessions"]
            other_id = next(s["id"] for s in sessions if not s["is_current"])
            response = await logged_in_client.post(
                "/sessions/terminate", json={"session_id": other_id}
            )
            assert response.status_code == 200

            response = await other.post("/auth/refresh")
            assert response.status_code == 401
            assert response.json()["code"] == "SESSION_REVOKED"

    async def test_password_change_revokes_refresh_tokens(self, app, logged_in_client, member):
        async with AsyncClient(transport=ASGITransport(app=app), base_url=TEST_BASE_URL) as other:
            await prime_csrf(other)
            assert (await login(other, member.email, remember_me=True)).status_code == 200

            response = await logged_in_client.post(
                "/auth/change-password",
                json={"current_password": TEST_PASSWORD, "new_password": NEW_PASSWORD},
            )
            assert response.status_code == 200

            response = await other.post("/auth/refresh")
            assert response.status_code == 401
            assert response.json()["code"] == "SESSION_REVOKED"

    async def test_concurrent_rotation_single_winner(self, database, settings, member):
        async with database.session() as session:
            service = AuthService(session, settings)
            account = await service.get_account_by_id(member.id)
            issued = await service.issue_session(account, remember_me=True)

        async def rotate():
            async with database.session() as session:
                return await AuthService(session, settings).rotate_refresh_token(
                    issued.refresh_token
                )

        results = await asyncio.gather(rotate(), rotate(), rotate(), return_exceptions=True)
        winners = [r for r in results if isinstance(r, tuple)]
        assert len(winners) == 1
        assert all(isinstance(r, AuthError) for r in results if not isinstance(r, tuple))

    async def test_missing_refresh_cookie(self, async_client):
        response = await async_client.post("/auth/refresh")
        assert response.status_code == 401

    async def test_session_token_cannot_refresh(self, logged_in_client):
        session = logged_in_client.cookies.get("skyplanner_session")
        logged_in_client.cookies.set("skyplanner_refresh", session)
        response = await logged_in_client.post("/auth/refresh")
        assert response.status_code == 401


@pytest.mark.asyncio
class TestChangePassword:
    async def test_change_password_revokes_other_sessions(self, app, logged_in_client, member):
        async with AsyncClient(transport=ASGITransport(app=app), base_url=TEST_BASE_URL) as other:
            await prime_csrf(other)
            assert (await login(other, member.email)).status_code == 200

            response = await logged_in_client.post(
                "/auth/change-password",
                json={"current_password": TEST_PASSWORD, "new_password": NEW_PASSWORD},
            )
            assert response.status_code == 200
            assert response.json()["sessions_revoked"] == 1

            assert (await logged_in_client.get("/auth/me")).status_code == 200
            revoked = await other.get("/auth/me")
            assert revoked.status_code == 401
            assert revoked.json()["code"] == "SESSION_REVOKED"

        assert (await login(logged_in_client, member.email, NEW_PASSWORD)).status_code == 200
        assert (await login(logged_in_client, member.email)).status_code == 401

    async def test_wrong_current_password(self, logged_in_client):
        response = await logged_in_client.post(
            "/auth/change-password",
            json={"current_password": "Not-The-Password-1", "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 401

    async def test_weak_new_password(self, logged_in_client):
        response = await logged_in_client.post(
            "/auth/change-password",
            json={"current_password": TEST_PASSWORD, "new_password": "password"},
        )
        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "PASSWORD_TOO_WEAK"
        assert "This password is too common and easy to guess" in body["reasons"]

    async def test_requires_authentication(self, async_client):
        response = await async_client.post(
            "/auth/change-password",
            json={"current_password": TEST_PASSWORD, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 401


@pytest.mark.asyncio
class TestPasswordStrength:
    async def test_strong(self, async_client):
        response = await async_client.post(
            "/auth/password-strength", json={"password": NEW_PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["valid"] is True

    async def test_resembles_user(self, async_client):
        response = await async_client.post(
            "/auth/password-strength",
            json={"password": "Kristoffer#2024x", "email": "kristoffer@example.com"},
        )
        data = response.json()
        assert data["valid"] is False
        assert "Password must not resemble your email address or name" in data["errors"]


@pytest.mark.asyncio
async def test_csrf_token_endpoint_sets_cookie(raw_client):
    response = await raw_client.get("/auth/csrf-token")
    assert response.status_code == 200
    assert raw_client.cookies.get("csrf_token") == response.json()["csrf_token"]
