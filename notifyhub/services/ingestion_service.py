from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.config import Settings
from notifyhub.crypto import TokenCipher
from notifyhub.errors import HubError, IntegrationNotFound, Unauthorized
from notifyhub.models.integration import Integration, ProviderType
from notifyhub.providers.base import EventRef, ProviderAdapter, WebhookEnvelope
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.services.notification_sink import NotificationSink
from notifyhub.services.token_service import TokenService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwnerRef:
    """Plain copy of the integration fields ingestion needs.

    A rolled back insert expires every ORM instance in the session, so batch
    processing works from this snapshot instead of the live row.
    """

    integration_id: UUID
    user_id: UUID
    provider_type: ProviderType

    @classmethod
    def of(cls, integration: Integration) -> "OwnerRef":
        return cls(integration.id, integration.user_id, integration.provider_type)


def _empty_counts() -> Dict[str, int]:
    return {"total": 0, "new": 0, "existing": 0, "failed": 0}


class IngestionPipeline:
    """Webhook and on-demand sync entry points feeding one dedup-then-store step."""

    def __init__(
        self,
        session: AsyncSession,
        adapters: AdapterRegistry,
        cipher: TokenCipher,
        settings: Settings,
    ) -> None:
        self.tokens = TokenService(session, adapters, cipher, settings)
        self.sink = NotificationSink(session)
        self.adapters = adapters
        self.settings = settings
        self._access_tokens: Dict[UUID, str] = {}

    # ------------------------------------------------------------------
    # Core step
    # ------------------------------------------------------------------

    async def _access_token(self, owner: OwnerRef) -> str:
        token = self._access_tokens.get(owner.integration_id)
        if token is None:
            integration = await self.tokens.store.get_by_id(owner.integration_id)
            if integration is None:
                raise IntegrationNotFound()
            token = await self.tokens.get_valid_access_token(integration)
            self._access_tokens[owner.integration_id] = token
        return token

    async def normalize_and_store(self, integration: Integration | OwnerRef, event_ref: EventRef) -> bool:
        """Store one provider event; ``False`` when it was already stored."""
        owner = integration if isinstance(integration, OwnerRef) else OwnerRef.of(integration)
        adapter = self.adapters.get(owner.provider_type)

        # Dedup gate runs before any per-event fetch
        if await self.sink.exists(owner.user_id, event_ref.source_id):
            return False

        if event_ref.is_reference:
            payload = await adapter.fetch_event(await self._access_token(owner), event_ref)
            # A fetch can refine the id (Drive revisions)
            if payload.source_id != event_ref.source_id and await self.sink.exists(
                owner.user_id, payload.source_id
            ):
                return False
        else:
            payload = adapter.normalize(event_ref)

        created = await self.sink.insert_if_absent(
            user_id=owner.user_id,
            integration_id=owner.integration_id,
            source=owner.provider_type.value,
            source_id=payload.source_id,
            title=payload.title or owner.provider_type.value,
            body=payload.body,
            metadata=payload.metadata,
            created_at=payload.occurred_at,
        )
        if created:
            logger.debug("Stored %s notification %s", owner.provider_type.value, payload.source_id)
        return created

    async def _process_batch(self, owner: OwnerRef, events: List[EventRef]) -> Dict[str, int]:
        counts = _empty_counts()
        counts["total"] = len(events)
        for event_ref in events:
            try:
                if await self.normalize_and_store(owner, event_ref):
                    counts["new"] += 1
                else:
                    counts["existing"] += 1
            except Exception as exc:
                counts["failed"] += 1
                message = exc.message if isinstance(exc, HubError) else str(exc)
                logger.error(
                    "Failed to ingest %s event %s: %s", owner.provider_type.value, event_ref.source_id, message
                )
        return counts

    async def _recent_events(self, owner: OwnerRef, adapter: ProviderAdapter, page_size: int) -> List[EventRef]:
        return await adapter.list_recent_events(await self._access_token(owner), page_size)

    # ------------------------------------------------------------------
    # On-demand sync
    # ------------------------------------------------------------------

    async def sync_recent(self, owner_id: UUID, provider_type: ProviderType) -> Dict[str, int]:
        integration = await self.tokens.store.get_active(owner_id, provider_type)
        if integration is None:
            raise IntegrationNotFound(f"No active {provider_type.value} integration found")

        owner = OwnerRef.of(integration)
        adapter = self.adapters.get(provider_type)
        events = await self._recent_events(owner, adapter, self.settings.sync_page_size)
        counts = await self._process_batch(owner, events)
        logger.info(
            "Synced %s for owner %s: %s new, %s existing, %s failed",
            provider_type.value,
            owner_id,
            counts["new"],
            counts["existing"],
            counts["failed"],
        )
        return counts

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def resolve_integration(self, adapter: ProviderAdapter, routing_key: Optional[str]) -> Optional[Integration]:
        """The single active integration ``routing_key`` belongs to, else ``None``."""
        if not routing_key:
            logger.warning("%s webhook carried no routing key", adapter.provider_type.value)
            return None
        matches = [
            integration
            for integration in await self.tokens.store.list_active(adapter.provider_type)
            if adapter.matches_integration(integration, routing_key)
        ]
        if len(matches) != 1:
            logger.warning(
                "%s webhook for %s matched %s integrations; acknowledging without processing",
                adapter.provider_type.value,
                routing_key,
                len(matches),
            )
            return None
        return matches[0]

    async def handle_webhook(
        self,
        provider_type: ProviderType,
        raw_body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        adapter = self.adapters.get(provider_type)
        if not adapter.verify_inbound_signature(raw_body, headers):
            logger.warning("Rejected %s webhook with invalid signature", provider_type.value)
            raise Unauthorized("Invalid webhook signature")

        envelopes = adapter.parse_webhook(raw_body, headers, query or {})
        counts = _empty_counts()
        counts["skipped"] = 0
        for envelope in envelopes:
            if envelope.ack_only:
                if envelope.response is not None:
                    return envelope.response
                logger.info("Acknowledged %s webhook: %s", provider_type.value, envelope.reason)
                continue
            result = await self._handle_envelope(adapter, envelope)
            if result is None:
                counts["skipped"] += 1
                continue
            for key in ("total", "new", "existing", "failed"):
                counts[key] += result[key]

        return {"success": True, **counts}

    async def _handle_envelope(self, adapter: ProviderAdapter, envelope: WebhookEnvelope) -> Optional[Dict[str, int]]:
        # Webhooks are always acknowledged; the next delivery or sync picks up what failed here
        failed = _empty_counts()
        failed["failed"] = 1
        try:
            integration = await self.resolve_integration(adapter, envelope.routing_key)
        except Exception as exc:
            logger.error(
                "Could not resolve %s webhook for %s: %s",
                adapter.provider_type.value,
                envelope.routing_key,
                exc.message if isinstance(exc, HubError) else exc,
            )
            return failed
        if integration is None:
            return None

        owner = OwnerRef.of(integration)
        try:
            events = envelope.events
            if envelope.list_recent:
                events = await self._recent_events(owner, adapter, self.settings.webhook_page_size)
        except Exception as exc:
            logger.error(
                "Could not list %s events for integration %s: %s",
                adapter.provider_type.value,
                owner.integration_id,
                exc.message if isinstance(exc, HubError) else exc,
            )
            return failed
        return await self._process_batch(owner, events)
