"""Tests for the forgotten-password and email verification flows."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update

from skyauth.models.account import Account
from skyauth.models.password_reset_token import PasswordResetToken
from skyauth.services.email_verification import EmailVerificationService, VerificationStatus
from skyauth.services.errors import (
    AuthError,
    PasswordTooWeakError,
    ResetTokenInvalidError,
    VerificationTokenExpiredError,
    VerificationTokenInvalidError,
)
from skyauth.services.password_reset import PasswordResetService, cleanup_expired_reset_tokens
from skyauth.services.sso import hash_token
from tests.conftest import TEST_BASE_URL, TEST_PASSWORD, login, prime_csrf

NEW_PASSWORD = "Harbor#Compass-82"


@pytest.mark.asyncio
class TestForgotPassword:
    async def test_known_and_unknown_addresses_look_identical(self, async_client, member, mailer):
        known = await async_client.post("/auth/forgot-password", json={"email": member.email})
        unknown = await async_client.post(
            "/auth/forgot-password", json={"email": "nobody@example.com"}
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert [m.to for m in mailer.sent] == [member.email]

    async def test_only_the_hash_is_stored(self, async_client, member, mailer, db_session):
        await async_client.post("/auth/forgot-password", json={"email": member.email})
        token = mailer.last_token()

        rows = (await db_session.execute(select(PasswordResetToken))).scalars().all()
        assert len(rows) == 1
        assert rows[0].token_hash == hash_token(token)
        assert token not in mailer.sent[-1].subject

    async def test_new_request_replaces_old_link(self, async_client, member, mailer):
        await async_client.post("/auth/forgot-password", json={"email": member.email})
        first = mailer.last_token()
        await async_client.post("/auth/forgot-password", json={"email": member.email})

        response = await async_client.post(
            "/auth/reset-password", json={"token": first, "new_password": NEW_PASSWORD}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "RESET_TOKEN_INVALID"


@pytest.mark.asyncio
class TestResetPassword:
    async def test_reset_signs_out_every_device(self, app, async_client, member, mailer):
        async with AsyncClient(transport=ASGITransport(app=app), base_url=TEST_BASE_URL) as device:
            await prime_csrf(device)
            assert (await login(device, member.email, remember_me=True)).status_code == 200

            await async_client.post("/auth/forgot-password", json={"email": member.email})
            response = await async_client.post(
                "/auth/reset-password",
                json={"token": mailer.last_token(), "new_password": NEW_PASSWORD},
            )
            assert response.status_code == 200

            assert (await device.get("/auth/me")).status_code == 401
            refresh = await device.post("/auth/refresh")
            assert refresh.status_code == 401
            assert refresh.json()["code"] == "SESSION_REVOKED"

        assert (await login(async_client, member.email, NEW_PASSWORD)).status_code == 200
        assert (await login(async_client, member.email, TEST_PASSWORD)).status_code == 401

    async def test_link_works_once(self, async_client, member, mailer):
        await async_client.post("/auth/forgot-password", json={"email": member.email})
        token = mailer.last_token()
        body = {"token": token, "new_password": NEW_PASSWORD}

        assert (await async_client.post("/auth/reset-password", json=body)).status_code == 200
        again = await async_client.post("/auth/reset-password", json=body)
        assert again.status_code == 400
        assert again.json()["code"] == "RESET_TOKEN_INVALID"

    async def test_weak_password_keeps_the_link(self, async_client, member, mailer):
        await async_client.post("/auth/forgot-password", json={"email": member.email})
        token = mailer.last_token()

        weak = await async_client.post(
            "/auth/reset-password", json={"token": token, "new_password": "password"}
        )
        assert weak.status_code == 422
        assert weak.json()["code"] == "PASSWORD_TOO_WEAK"

        response = await async_client.post(
            "/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD}
        )
        assert response.status_code == 200

    async def test_unknown_token(self, async_client):
        body = {"token": "not-a-real-token", "new_password": NEW_PASSWORD}
        response = await async_client.post("/auth/reset-password", json=body)
        assert response.status_code == 400


@pytest.mark.asyncio
class TestPasswordResetService:
    async def test_expired_token_rejected(self, db_session, settings, member, mailer):
        service = PasswordResetService(db_session, settings, mailer)
        await service.request_reset(member.email)
        await db_session.execute(
            update(PasswordResetToken).values(expires_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        await db_session.commit()

        with pytest.raises(ResetTokenInvalidError):
            await service.redeem_reset(mailer.last_token(), NEW_PASSWORD)

    async def test_password_resembling_email_rejected(self, db_session, settings, member, mailer):
        service = PasswordResetService(db_session, settings, mailer)
        await service.request_reset(member.email)
        with pytest.raises(PasswordTooWeakError):
            await service.redeem_reset(mailer.last_token(), "pilot@example.com1A!")

    async def test_concurrent_redemption_single_winner(self, database, settings, member, mailer):
        async with database.session() as session:
            await PasswordResetService(session, settings, mailer).request_reset(member.email)
        token = mailer.last_token()

        async def redeem():
            async with database.session() as session:
                service = PasswordResetService(session, settings, mailer)
                return await service.redeem_reset(token, NEW_PASSWORD)

        results = await asyncio.gather(redeem(), redeem(), redeem(), return_exceptions=True)
        winners = [r for r in results if isinstance(r, Account)]
        assert len(winners) == 1
        assert all(isinstance(r, AuthError) for r in results if not isinstance(r, Account))

    async def test_cleanup(self, db_session, settings, member, mailer, create_account):
        service = PasswordResetService(db_session, settings, mailer)
        await service.request_reset(member.email)
        await service.redeem_reset(mailer.last_token(), NEW_PASSWORD)
        other = await create_account(email="navigator@example.com")
        await service.request_reset(other.email)

        assert await cleanup_expired_reset_tokens(db_session) == 1
        remaining = (await db_session.execute(select(PasswordResetToken))).scalars().all()
        assert [r.account_id for r in remaining] == [other.id]


@pytest.mark.asyncio
class TestEmailVerification:
    async def test_verify_flow(self, logged_in_client, member, mailer):
        me = await logged_in_client.get("/auth/me")
        assert me.json()["email_verified"] is False

        response = await logged_in_client.post("/auth/send-verification")
        assert response.json() == {"status": "sent"}
        token = mailer.last_token()

        response = await logged_in_client.post("/auth/verify-email", json={"token": token})
        assert response.status_code == 200
        assert response.json() == {"status": "verified"}
        assert (await logged_in_client.get("/auth/me")).json()["email_verified"] is True

        # The token is cleared once used
        again = await logged_in_client.post("/auth/verify-email", json={"token": token})
        assert again.status_code == 400
        assert again.json()["code"] == "VERIFICATION_TOKEN_INVALID"

        response = await logged_in_client.post("/auth/send-verification")
        assert response.json() == {"status": "already_verified"}

    async def test_send_requires_authentication(self, async_client):
        response = await async_client.post("/auth/send-verification")
        assert response.status_code == 401

    async def test_expired_link(self, db_session, settings, member, mailer):
        service = EmailVerificationService(db_session, settings, mailer)
        account = await db_session.get(Account, member.id)
        assert await service.send_verification(account) is VerificationStatus.SENT
        account.verification_expires_at = datetime.now(UTC) - timedelta(minutes=1)
        await db_session.commit()

        with pytest.raises(VerificationTokenExpiredError):
            await service.verify(mailer.last_token())

    async def test_resend_replaces_link(self, db_session, settings, member, mailer):
        service = EmailVerificationService(db_session, settings, mailer)
        account = await db_session.get(Account, member.id)
        await service.send_verification(account)
        first = mailer.last_token()
        await service.send_verification(account)

        with pytest.raises(VerificationTokenInvalidError):
            await service.verify(first)
        assert await service.verify(mailer.last_token()) is VerificationStatus.VERIFIED
