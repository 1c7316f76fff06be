from __future__ import annotations

import datetime as dt
import uuid

import pytest
from sqlalchemy import func, select

from conftest import form_data
from notifyhub.errors import TokenExchangeFailed, ValidationError
from notifyhub.models.integration import Integration, IntegrationStatus, ProviderType
from notifyhub.providers.google import DRIVE_BASE_URL, GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL
from notifyhub.providers.slack import SLACK_API_BASE
from notifyhub.services.oauth_service import OAuthExchangeService
from notifyhub.services.subscription_tasks import SubscriptionRunner
from notifyhub.timeutil import as_utc, utcnow


@pytest.fixture
def scheduled():
    return []


@pytest.fixture
def service(db_session, adapters, cipher, settings, scheduled):
    return OAuthExchangeService(db_session, adapters, cipher, settings, schedule=scheduled.append)


async def count_integrations(session) -> int:
    result = await session.execute(select(func.count(Integration.id)))
    return result.scalar()


def stub_google_token(fake_api, access_token="A", refresh_token="R", expires_in=3600):
    fake_api.add(
        "POST",
        GOOGLE_TOKEN_URL,
        {"access_token": access_token, "refresh_token": refresh_token, "expires_in": expires_in, "scope": "s"},
    )
    fake_api.add("GET", GOOGLE_USERINFO_URL, {"email": "owner@example.com"})


class TestExchangeAndStore:
    @pytest.mark.asyncio
    async def test_gmail_exchange_creates_active_integration(self, service, fake_api, cipher, user_id):
        stub_google_token(fake_api)

        integration = await service.exchange_and_store(ProviderType.GMAIL, "abcdefghij", None, user_id)

        assert integration.status == IntegrationStatus.ACTIVE.value
        assert integration.integration_type == "gmail"
        expected = utcnow() + dt.timedelta(seconds=3600)
        assert abs((as_utc(integration.token_expires_at) - expected).total_seconds()) < 5
        # Stored encrypted
        assert integration.access_token != "A"
        assert cipher.decrypt(integration.access_token) == "A"
        assert cipher.decrypt(integration.refresh_token) == "R"
        assert integration.metadata_["email"] == "owner@example.com"
        # Default redirect uri comes from settings
        assert form_data(fake_api.calls_to(GOOGLE_TOKEN_URL)[0])["redirect_uri"] == "https://app.example.com/auth/callback"

    @pytest.mark.asyncio
    async def test_reconnect_overwrites_credentials(self, service, fake_api, cipher, db_session, user_id):
        stub_google_token(fake_api, access_token="first")
        first = await service.exchange_and_store(ProviderType.GMAIL, "abcdefghij", None, user_id)

        stub_google_token(fake_api, access_token="second", refresh_token="R2")
        second = await service.exchange_and_store(ProviderType.GMAIL, "klmnopqrst", None, user_id)

        assert await count_integrations(db_session) == 1
        assert second.id == first.id
        assert cipher.decrypt(second.access_token) == "second"
        assert cipher.decrypt(second.refresh_token) == "R2"

    @pytest.mark.asyncio
    async def test_same_owner_different_providers_are_separate_rows(self, service, fake_api, db_session, user_id):
        stub_google_token(fake_api)

        await service.exchange_and_store(ProviderType.GMAIL, "abcdefghij", None, user_id)
        await service.exchange_and_store(ProviderType.GOOGLE_DRIVE, "abcdefghij", None, user_id)

        assert await count_integrations(db_session) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["short", "", "         ", None, 12345678901])
    async def test_malformed_code_rejected_before_network(self, service, fake_api, user_id, code):
        with pytest.raises(ValidationError):
            await service.exchange_and_store(ProviderType.GMAIL, code, None, user_id)

        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_provider_rejection_leaves_nothing_stored(self, service, fake_api, db_session, user_id):
        fake_api.add("POST", GOOGLE_TOKEN_URL, {"error": "invalid_grant", "error_description": "Bad code"}, status=400)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await service.exchange_and_store(ProviderType.GMAIL, "abcdefghij", None, user_id)

        assert exc_info.value.details["error"] == "invalid_grant"
        assert await count_integrations(db_session) == 0

    @pytest.mark.asyncio
    async def test_slack_gets_nominal_one_year_expiry(self, service, fake_api, scheduled, user_id):
        fake_api.add(
            "POST",
            f"{SLACK_API_BASE}/oauth.v2.access",
            {"ok": True, "access_token": "xoxb-1", "team": {"id": "T123", "name": "Acme"}},
        )

        integration = await service.exchange_and_store(ProviderType.SLACK, "abcdefghij", None, user_id)

        assert integration.refresh_token is None
        remaining = as_utc(integration.token_expires_at) - utcnow()
        assert dt.timedelta(days=364) < remaining <= dt.timedelta(days=365)
        assert integration.metadata_["team_id"] == "T123"
        assert scheduled == []


class TestChangeSubscription:
    @pytest.mark.asyncio
    async def test_drive_exchange_schedules_subscription(self, service, fake_api, scheduled, user_id):
        stub_google_token(fake_api)

        integration = await service.exchange_and_store(ProviderType.GOOGLE_DRIVE, "abcdefghij", None, user_id)

        assert len(scheduled) == 1
        assert scheduled[0].integration_id == integration.id
        assert scheduled[0].provider_type == ProviderType.GOOGLE_DRIVE

    @pytest.mark.asyncio
    async def test_gmail_without_topic_schedules_nothing(self, service, fake_api, scheduled, user_id):
        stub_google_token(fake_api)

        await service.exchange_and_store(ProviderType.GMAIL, "abcdefghij", None, user_id)

        assert scheduled == []

    @pytest.mark.asyncio
    async def test_subscription_stores_channel(
        self, service, fake_api, scheduled, session_factory, adapters, cipher, settings, user_id
    ):
        stub_google_token(fake_api)
        fake_api.add("GET", f"{DRIVE_BASE_URL}/changes/startPageToken", {"startPageToken": "42"})
        fake_api.add(
            "POST",
            f"{DRIVE_BASE_URL}/changes/watch",
            {"id": f"drive-{user_id}-1", "resourceId": "res-1", "expiration": "1700000000000"},
        )
        await service.exchange_and_store(ProviderType.GOOGLE_DRIVE, "abcdefghij", None, user_id)

        runner = SubscriptionRunner(session_factory, adapters, cipher, settings)
        updates = await runner.run(scheduled[0])

        assert updates["channel_id"] == f"drive-{user_id}-1"
        async with session_factory() as session:
            stored = await session.get(Integration, scheduled[0].integration_id)
        assert stored.metadata_["resource_id"] == "res-1"
        assert stored.metadata_["page_token"] == "42"
        watch = fake_api.calls_to(f"{DRIVE_BASE_URL}/changes/watch")[0]
        assert b"https://hub.example.com/api/webhooks/google-drive" in watch.content

    @pytest.mark.asyncio
    async def test_subscription_failure_is_swallowed(
        self, service, fake_api, scheduled, session_factory, adapters, cipher, settings, user_id
    ):
        stub_google_token(fake_api)
        fake_api.add("GET", f"{DRIVE_BASE_URL}/changes/startPageToken", {"error": "boom"}, status=500)

        integration = await service.exchange_and_store(ProviderType.GOOGLE_DRIVE, "abcdefghij", None, user_id)
        runner = SubscriptionRunner(session_factory, adapters, cipher, settings)

        assert await runner.run(scheduled[0]) is None
        assert scheduled[0].attempts == 1
        async with session_factory() as session:
            stored = await session.get(Integration, integration.id)
        assert stored.status == IntegrationStatus.ACTIVE.value
        assert "channel_id" not in stored.metadata_

    @pytest.mark.asyncio
    async def test_scheduler_error_does_not_fail_exchange(self, db_session, adapters, cipher, settings, fake_api):
        def broken_schedule(task):
            raise RuntimeError("queue unavailable")

        stub_google_token(fake_api)
        service = OAuthExchangeService(db_session, adapters, cipher, settings, schedule=broken_schedule)

        integration = await service.exchange_and_store(
            ProviderType.GOOGLE_DRIVE, "abcdefghij", None, uuid.uuid4()
        )

        assert integration.status == IntegrationStatus.ACTIVE.value
