"""Tests for the active session endpoints."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tests.conftest import TEST_BASE_URL, login, prime_csrf


@pytest_asyncio.fixture
async def second_device(app, member):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url=TEST_BASE_URL,
        headers={"User-Agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Safari"},
    ) as client:
        await prime_csrf(client)
        response = await login(client, member.email)
        assert response.status_code == 200
        yield client


@pytest.mark.asyncio
class TestListSessions:
    async def test_lists_every_device(self, logged_in_client, second_device):
        response = await logged_in_client.get("/sessions")
        assert response.status_code == 200
        sessions = response.json()["sessions"]
        assert len(sessions) == 2
        assert [s["is_current"] for s in sessions].count(True) == 1

        other = await second_device.get("/sessions")
        current_here = next(s["id"] for s in sessions if s["is_current"])
        current_there = next(s["id"] for s in other.json()["sessions"] if s["is_current"])
        assert current_here != current_there

    async def test_requires_authentication(self, async_client):
        response = await async_client.get("/sessions")
        assert response.status_code == 401

    async def test_other_accounts_are_not_listed(self, logged_in_client, create_account):
        await create_account(email="navigator@example.com")
        response = await logged_in_client.get("/sessions")
        assert len(response.json()["sessions"]) == 1


@pytest.mark.asyncio
class TestTerminateSession:
    async def test_terminate_other_device(self, logged_in_client, second_device):
        sessions = (await logged_in_client.get("/sessions")).json()["sessions"]
        other_id = next(s["id"] for s in sessions if not s["is_current"])

        response = await logged_in_client.post("/sessions/terminate", json={"session_id": other_id})
        assert response.status_code == 200
        assert response.json()["message"] == "Session terminated"

        revoked = await second_device.get("/auth/me")
        assert revoked.status_code == 401
        assert revoked.json()["code"] == "SESSION_REVOKED"

        remaining = (await logged_in_client.get("/sessions")).json()["sessions"]
        assert [s["id"] for s in remaining] != [other_id]
        assert len(remaining) == 1

    async def test_cannot_terminate_current(self, logged_in_client):
        sessions = (await logged_in_client.get("/sessions")).json()["sessions"]
        current_id = next(s["id"] for s in sessions if s["is_current"])

        response = await logged_in_client.post(
            "/sessions/terminate", json={"session_id": current_id}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "CANNOT_TERMINATE_CURRENT"

    async def test_unknown_session(self, logged_in_client):
        response = await logged_in_client.post(
            "/sessions/terminate", json={"session_id": "not-a-session"}
        )
        assert response.status_code == 404
        assert response.json()["code"] == "SESSION_NOT_FOUND"
