"""Tests for the cross-domain SSO relay."""

import asyncio
import re
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update

from skyauth.models.sso_token import SsoToken
from skyauth.services.errors import (
    AuthError,
    SsoIpMismatchError,
    SsoOriginMismatchError,
    SsoTokenExpiredOrUsedError,
)
from skyauth.services.sso import (
    SsoService,
    check_same_origin,
    hash_token,
    launch_form_headers,
    render_launch_form,
)
from skyauth.services.tokens import MemberSubject
from tests.conftest import TEST_BASE_URL

SUBJECT = MemberSubject(user_id=str(uuid.uuid4()), organization_id=str(uuid.uuid4()))
CLIENT_IP = "198.51.100.7"
TOKEN_FIELD = re.compile(r'name="token" value="([0-9a-f]{64})"')


class TestSameOrigin:
    def test_matching_referer(self):
        check_same_origin("skyplanner.no", None, "https://skyplanner.no/account")

    def test_matching_origin(self):
        check_same_origin("skyplanner.no", "https://skyplanner.no", None)

    def test_host_with_port(self):
        check_same_origin("localhost:8000", None, "http://localhost:8000/page")

    def test_neither_header(self):
        with pytest.raises(SsoOriginMismatchError):
            check_same_origin("skyplanner.no", None, None)

    def test_foreign_referer(self):
        with pytest.raises(SsoOriginMismatchError):
            check_same_origin("skyplanner.no", None, "https://evil.example/skyplanner.no")

    def test_referer_wins_over_origin(self):
        with pytest.raises(SsoOriginMismatchError):
            check_same_origin("skyplanner.no", "https://skyplanner.no", "https://evil.example/")

    def test_lookalike_host(self):
        with pytest.raises(SsoOriginMismatchError):
            check_same_origin("skyplanner.no", "https://skyplanner.no.evil.example", None)


class TestLaunchPage:
    def test_form_posts_token(self):
        page = render_launch_form("ab" * 32, "https://app.skyplanner.no/sso/redeem")
        assert 'method="POST"' in page
        assert 'action="https://app.skyplanner.no/sso/redeem"' in page
        assert TOKEN_FIELD.search(page).group(1) == "ab" * 32

    def test_values_are_escaped(self):
        page = render_launch_form('"><script>', 'https://app.example/"x')
        assert "<script>alert" not in page
        assert '"><script>' not in page
        assert "&quot;&gt;&lt;script&gt;" in page

    def test_headers(self):
        headers = launch_form_headers("https://app.skyplanner.no/sso/redeem")
        assert headers["Cache-Control"].startswith("no-store")
        assert headers["Referrer-Policy"] == "no-referrer"
        csp = headers["Content-Security-Policy"]
        assert "form-action https://app.skyplanner.no" in csp
        assert "script-src 'sha256-" in csp
        assert "default-src 'none'" in csp


@pytest.mark.asyncio
class TestSsoService:
    async def test_ttl_capped(self, db_session):
        assert SsoService(db_session, ttl_seconds=300).ttl == timedelta(seconds=30)

    async def test_only_hash_is_stored(self, db_session):
        raw = await SsoService(db_session).issue(SUBJECT, CLIENT_IP)
        assert re.fullmatch(r"[0-9a-f]{64}", raw)
        record = (await db_session.execute(select(SsoToken))).scalar_one()
        assert record.token_hash == hash_token(raw)
        assert CLIENT_IP not in record.ip_hash
        assert str(record.organization_id) == SUBJECT.organization_id

    async def test_redeem_once(self, db_session):
        service = SsoService(db_session)
        raw = await service.issue(SUBJECT, CLIENT_IP)

        record = await service.redeem(raw, CLIENT_IP)
        assert record.subject_id == SUBJECT.user_id
        assert record.subject_type == "member"

        with pytest.raises(SsoTokenExpiredOrUsedError):
            await service.redeem(raw, CLIENT_IP)

    async def test_unknown_and_empty_tokens(self, db_session):
        service = SsoService(db_session)
        with pytest.raises(SsoTokenExpiredOrUsedError):
            await service.redeem("ff" * 32, CLIENT_IP)
        with pytest.raises(SsoTokenExpiredOrUsedError):
            await service.redeem("", CLIENT_IP)

    async def test_expired_token(self, db_session):
        service = SsoService(db_session)
        raw = await service.issue(SUBJECT, CLIENT_IP)
        await db_session.execute(
            update(SsoToken).values(expires_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        await db_session.commit()
        with pytest.raises(SsoTokenExpiredOrUsedError):
            await service.redeem(raw, CLIENT_IP)

    async def test_ip_mismatch_does_not_consume(self, db_session):
        service = SsoService(db_session)
        raw = await service.issue(SUBJECT, CLIENT_IP)

        with pytest.raises(SsoIpMismatchError):
            await service.redeem(raw, "203.0.113.50")
        assert (await service.redeem(raw, CLIENT_IP)).subject_id == SUBJECT.user_id

    async def test_concurrent_redemption_single_winner(self, database):
        async with database.session() as session:
            raw = await SsoService(session).issue(SUBJECT, CLIENT_IP)

        async def attempt():
            async with database.session() as session:
                return await SsoService(session).redeem(raw, CLIENT_IP)

        results = await asyncio.gather(*(attempt() for _ in range(5)), return_exceptions=True)
        winners = [r for r in results if isinstance(r, SsoToken)]
        assert len(winners) == 1
        assert all(isinstance(r, AuthError) for r in results if not isinstance(r, SsoToken))

    async def test_cleanup_removes_used_and_expired(self, db_session):
        service = SsoService(db_session)
        used = await service.issue(SUBJECT, CLIENT_IP)
        await service.redeem(used, CLIENT_IP)
        await service.issue(SUBJECT, CLIENT_IP)
        await service.issue(SUBJECT, CLIENT_IP)
        await db_session.execute(
            update(SsoToken)
            .where(SsoToken.used_at.is_(None))
            .values(expires_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        await db_session.commit()
        await service.issue(SUBJECT, CLIENT_IP)

        assert await service.cleanup_expired() == 3


REFERER = {"Referer": f"{TEST_BASE_URL}/account"}


async def _launch(client: AsyncClient) -> str:
    response = await client.get("/sso-launch", headers=REFERER)
    assert response.status_code == 200, response.text
    return TOKEN_FIELD.search(response.text).group(1)


@pytest.mark.asyncio
class TestSsoEndpoints:
    async def test_launch_page(self, logged_in_client):
        response = await logged_in_client.get("/sso-launch", headers=REFERER)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert "form-action http://test" in response.headers["Content-Security-Policy"]
        assert TOKEN_FIELD.search(response.text)

    async def test_launch_requires_same_origin(self, logged_in_client):
        response = await logged_in_client.get("/sso-launch")
        assert response.status_code == 403
        assert response.json()["code"] == "SSO_ORIGIN_MISMATCH"

        response = await logged_in_client.get(
            "/sso-launch", headers={"Referer": "https://evil.example/"}
        )
        assert response.status_code == 403

    async def test_launch_requires_session(self, async_client):
        response = await async_client.get("/sso-launch", headers=REFERER)
        assert response.status_code == 401

    async def test_redeem_sets_session_cookie(self, app, logged_in_client, member):
        token = await _launch(logged_in_client)

        async with AsyncClient(transport=ASGITransport(app=app), base_url=TEST_BASE_URL) as other:
            response = await other.post("/sso/redeem", data={"token": token})
            assert response.status_code == 303
            assert response.headers["location"] == "/dashboard"
            assert "skyplanner_session" in other.cookies

            me = await other.get("/auth/me")
            assert me.status_code == 200
            assert me.json()["email"] == member.email

    async def test_redeem_twice(self, logged_in_client):
        token = await _launch(logged_in_client)
        first = await logged_in_client.post("/sso/redeem", data={"token": token})
        assert first.status_code == 303
        second = await logged_in_client.post("/sso/redeem", data={"token": token})
        assert second.status_code == 401
        assert second.json()["code"] == "SSO_TOKEN_EXPIRED_OR_USED"

    async def test_redeem_from_other_network(self, logged_in_client):
        token = await _launch(logged_in_client)
        response = await logged_in_client.post(
            "/sso/redeem",
            data={"token": token},
            headers={"CF-Connecting-IP": "203.0.113.50"},
        )
        assert response.status_code == 401
        assert response.json()["code"] == "SSO_IP_MISMATCH"
