from __future__ import annotations

import uuid
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import dumps, slack_headers
from notifyhub.api.deps import (
    get_adapters,
    get_cipher,
    get_current_user_id,
    get_session_factory,
)
from notifyhub.config import get_settings
from notifyhub.db import get_db
from notifyhub.errors import Unauthorized
from notifyhub.main import app
from notifyhub.models.integration import Integration, ProviderType
from notifyhub.models.notification import Notification
from notifyhub.providers.google import GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL
from notifyhub.services.notification_sink import NotificationSink


@pytest_asyncio.fixture
async def client(
    session_factory, adapters, cipher, settings, user_id
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """API client wired to the test database, stubbed providers and a fixed caller."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_adapters] = lambda: adapters
    app.dependency_overrides[get_cipher] = lambda: cipher
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_current_user_id] = lambda: user_id

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        for path in ("/health", "/api/health"):
            response = await client.get(path)
            assert response.status_code == 200
            assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_root_alias_serves_same_handler(self, client):
        root = await client.get("/health")
        api = await client.get("/api/health")
        assert root.json() == api.json()

    @pytest.mark.asyncio
    async def test_unknown_route_uses_error_envelope(self, client):
        response = await client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"error": "Not Found", "status": 404}


class TestOAuthEndpoint:
    @pytest.mark.asyncio
    async def test_google_exchange(self, client, fake_api):
        fake_api.add("POST", GOOGLE_TOKEN_URL, {"access_token": "A", "refresh_token": "R", "expires_in": 3600})
        fake_api.add("GET", GOOGLE_USERINFO_URL, {"email": "owner@example.com"})

        response = await client.post(
            "/api/oauth/google", json={"code": "abcdefghij", "integration_type": "gmail"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["integration"]["type"] == "gmail"
        assert body["integration"]["status"] == "active"
        assert body["integration"]["id"]

    @pytest.mark.asyncio
    async def test_short_code_rejected(self, client, fake_api):
        response = await client.post("/api/oauth/google", json={"code": "abc", "integration_type": "gmail"})

        assert response.status_code == 400
        assert response.json()["status"] == 400
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_type_must_belong_to_group(self, client):
        response = await client.post("/api/oauth/google", json={"code": "abcdefghij", "integration_type": "slack"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_google_requires_integration_type(self, client):
        response = await client.post("/api/oauth/google", json={"code": "abcdefghij"})
        assert response.status_code == 400
        assert response.json()["error"] == "integration_type is required"

    @pytest.mark.asyncio
    async def test_missing_code_is_validation_error(self, client):
        response = await client.post("/api/oauth/hubspot", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"

    @pytest.mark.asyncio
    async def test_upstream_rejection_envelope(self, client, fake_api):
        fake_api.add("POST", GOOGLE_TOKEN_URL, {"error": "invalid_grant"}, status=400)

        response = await client.post(
            "/api/oauth/google", json={"code": "abcdefghij", "integration_type": "google-drive"}
        )

        assert response.status_code == 400
        assert response.json() == {
            "error": "Failed to exchange authorization code",
            "status": 400,
            "details": {"error": "invalid_grant"},
        }


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_slack_invalid_signature(self, client, slack_message_event):
        body = dumps(slack_message_event)

        response = await client.post("/api/webhooks/slack", content=body, headers=slack_headers(body, secret="nope"))

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid webhook signature", "status": 401}

    @pytest.mark.asyncio
    async def test_slack_challenge(self, client):
        body = dumps({"type": "url_verification", "challenge": "c-123"})

        response = await client.post("/api/webhooks/slack", content=body, headers=slack_headers(body))

        assert response.status_code == 200
        assert response.json() == {"challenge": "c-123"}

    @pytest.mark.asyncio
    async def test_drive_sync_acknowledged(self, client, fake_api):
        response = await client.post(
            "/api/webhooks/google-drive",
            headers={"X-Goog-Channel-ID": "drive-x-1", "X-Goog-Resource-State": "sync"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_drive_without_headers_unauthorized(self, client):
        response = await client.post("/api/webhooks/google-drive")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client):
        response = await client.post("/api/webhooks/dropbox", content=b"{}")
        assert response.status_code == 400
        assert "Invalid integration type" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_unmatched_hubspot_acknowledged(self, client):
        body = dumps([{"eventId": 1, "portalId": 5, "objectId": 1, "subscriptionType": "contact.creation"}])

        response = await client.post("/api/webhooks/hubspot", content=body)

        assert response.status_code == 200
        assert response.json()["skipped"] == 1


class TestSyncAndRefreshEndpoints:
    @pytest.mark.asyncio
    async def test_sync_without_integration(self, client):
        response = await client.post("/api/sync/gmail")

        assert response.status_code == 404
        assert response.json()["status"] == 404

    @pytest.mark.asyncio
    async def test_sync_counts(self, client, make_integration, fake_api, user_id):
        from notifyhub.providers.google import DRIVE_BASE_URL

        await make_integration(ProviderType.GOOGLE_DRIVE, user_id)
        fake_api.add("GET", f"{DRIVE_BASE_URL}/files", {"files": [{"id": "f1", "name": "a", "modifiedTime": "t"}]})

        response = await client.post("/api/sync/google-drive")

        assert response.status_code == 200
        assert response.json() == {"success": True, "total": 1, "new": 1, "existing": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_token_refresh_sweep(self, client):
        response = await client.post("/api/token-refresh")

        assert response.status_code == 200
        assert response.json() == {"success": True, "refreshed": 0, "failed": 0, "errors": []}

    @pytest.mark.asyncio
    async def test_token_refresh_cron_secret(self, client, settings):
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"cron_secret": "s3cret"})

        denied = await client.post("/api/token-refresh", headers={"X-Cron-Secret": "wrong"})
        allowed = await client.post("/api/token-refresh", headers={"X-Cron-Secret": "s3cret"})

        assert denied.status_code == 401
        assert allowed.status_code == 200


class TestOwnerEndpoints:
    @pytest.mark.asyncio
    async def test_integrations_hide_credentials(self, client, make_integration, user_id):
        await make_integration(ProviderType.HUBSPOT, user_id, metadata={"hub_id": 100})

        response = await client.get("/api/integrations")

        assert response.status_code == 200
        [integration] = response.json()["integrations"]
        assert integration["integration_type"] == "hubspot"
        assert integration["metadata"] == {"hub_id": 100}
        assert "access_token" not in integration
        assert "refresh_token" not in integration

    @pytest.mark.asyncio
    async def test_disconnect(self, client, make_integration, user_id, session_factory):
        await make_integration(ProviderType.SLACK, user_id, refresh_token=None)

        first = await client.delete("/api/integrations/slack")
        second = await client.delete("/api/integrations/slack")

        assert first.status_code == 200
        assert second.status_code == 404
        async with session_factory() as session:
            assert (await session.execute(select(Integration))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_notification_lifecycle(self, client, db_session, user_id, session_factory):
        sink = NotificationSink(db_session)
        for source_id in ("a", "b"):
            await sink.insert_if_absent(
                user_id=user_id, integration_id=None, source="slack", source_id=source_id,
                title=f"Message {source_id}", body="hi", metadata={"channel": "C1"},
            )
        # Someone else's notification never shows up
        await sink.insert_if_absent(
            user_id=uuid.uuid4(), integration_id=None, source="slack", source_id="c",
            title="Other", body="", metadata={},
        )

        listing = (await client.get("/api/notifications")).json()
        assert listing["unread_count"] == 2
        assert {n["source_id"] for n in listing["notifications"]} == {"a", "b"}
        assert listing["notifications"][0]["metadata"] == {"channel": "C1"}
        target = listing["notifications"][0]["id"]

        assert (await client.post(f"/api/notifications/{target}/read")).status_code == 200
        unread = (await client.get("/api/notifications", params={"unread_only": True})).json()
        assert len(unread["notifications"]) == 1

        assert (await client.post(f"/api/notifications/{target}/unread")).status_code == 200
        assert (await client.post("/api/notifications/read-all")).json()["updated"] == 2

        assert (await client.delete(f"/api/notifications/{target}")).status_code == 200
        assert (await client.delete(f"/api/notifications/{target}")).status_code == 404

        async with session_factory() as session:
            remaining = (await session.execute(select(Notification.source_id))).scalars().all()
        assert len(remaining) == 2


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_bearer_token(self):
        with pytest.raises(Unauthorized):
            await get_current_user_id(None)

    @pytest.mark.asyncio
    async def test_malformed_header(self):
        with pytest.raises(Unauthorized):
            await get_current_user_id("Token abc")
