from __future__ import annotations

import logging
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.config import Settings
from notifyhub.crypto import TokenCipher, mask_token
from notifyhub.errors import ValidationError
from notifyhub.models.integration import Integration, ProviderType
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.services.subscription_tasks import SubscriptionTask
from notifyhub.services.token_service import compute_expiry
from notifyhub.services.token_store import TokenStore

logger = logging.getLogger(__name__)

MIN_CODE_LENGTH = 10


class OAuthExchangeService:
    """Turn an authorization code into a stored, encrypted integration."""

    def __init__(
        self,
        session: AsyncSession,
        adapters: AdapterRegistry,
        cipher: TokenCipher,
        settings: Settings,
        schedule: Optional[Callable[[SubscriptionTask], Any]] = None,
    ) -> None:
        self.store = TokenStore(session)
        self.adapters = adapters
        self.cipher = cipher
        self.settings = settings
        self.schedule = schedule

    async def exchange_and_store(
        self,
        provider_type: ProviderType,
        authorization_code: Any,
        redirect_uri: Optional[str],
        owner_id: UUID,
    ) -> Integration:
        if not isinstance(authorization_code, str) or len(authorization_code.strip()) < MIN_CODE_LENGTH:
            raise ValidationError("Invalid authorization code")

        adapter = self.adapters.get(provider_type)
        grant = await adapter.exchange_code(authorization_code.strip(), redirect_uri or self.settings.default_redirect_uri)
        logger.info(
            "Exchanged %s code for owner %s (%s)",
            provider_type.value,
            owner_id,
            mask_token(grant.access_token),
        )

        integration = await self.store.upsert_integration(
            user_id=owner_id,
            provider_type=provider_type,
            access_token=self.cipher.encrypt(grant.access_token),
            refresh_token=self.cipher.encrypt_optional(grant.refresh_token),
            expires_at=compute_expiry(grant.expires_in),
            metadata={k: v for k, v in grant.raw_metadata.items() if v is not None},
        )

        if adapter.needs_change_subscription and self.schedule is not None:
            self._schedule_subscription(integration)
        return integration

    def _schedule_subscription(self, integration: Integration) -> None:
        task = SubscriptionTask(integration_id=integration.id, provider_type=integration.provider_type)
        try:
            self.schedule(task)
        except Exception as exc:  # connecting must not fail on registration
            logger.error("Could not schedule subscription for integration %s: %s", integration.id, exc)
