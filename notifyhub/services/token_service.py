from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.config import Settings
from notifyhub.crypto import TokenCipher, mask_token
from notifyhub.errors import TokenRefreshFailed
from notifyhub.models.integration import Integration
from notifyhub.providers.base import TokenGrant
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.services.token_store import TokenStore
from notifyhub.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

# Nominal validity for tokens the provider never expires (Slack bot tokens)
NON_EXPIRING_VALIDITY = dt.timedelta(days=365)


def compute_expiry(expires_in: Optional[int], now: Optional[dt.datetime] = None) -> dt.datetime:
    now = now or utcnow()
    if expires_in is None:
        return now + NON_EXPIRING_VALIDITY
    return now + dt.timedelta(seconds=int(expires_in))


def needs_refresh(integration: Integration, margin_seconds: int, now: Optional[dt.datetime] = None) -> bool:
    expires_at = as_utc(integration.token_expires_at)
    if expires_at is None:
        return False
    now = now or utcnow()
    return expires_at - dt.timedelta(seconds=margin_seconds) <= now


class TokenService:
    """Credential lifecycle for stored integrations: refresh and decrypt."""

    def __init__(
        self,
        session: AsyncSession,
        adapters: AdapterRegistry,
        cipher: TokenCipher,
        settings: Settings,
    ) -> None:
        self.store = TokenStore(session)
        self.adapters = adapters
        self.cipher = cipher
        self.settings = settings

    async def refresh_integration(self, integration: Integration) -> Integration:
        """Refresh one integration's credentials and persist them.

        Raises ``TokenRefreshFailed`` when no refresh token is stored or the
        provider rejects it. Failure bookkeeping is left to the caller.
        """
        adapter = self.adapters.get(integration.integration_type)
        refresh_token = self.cipher.decrypt_optional(integration.refresh_token)
        if not refresh_token:
            raise TokenRefreshFailed("No refresh token stored for integration")

        grant: TokenGrant = await adapter.refresh(refresh_token)
        logger.info(
            "Refreshed %s token for integration %s (%s)",
            integration.integration_type,
            integration.id,
            mask_token(grant.access_token),
        )
        return await self.store.update_credentials(
            integration,
            access_token=self.cipher.encrypt(grant.access_token),
            refresh_token=self.cipher.encrypt_optional(grant.refresh_token),
            expires_at=compute_expiry(grant.expires_in),
        )

    async def get_valid_access_token(self, integration: Integration) -> str:
        """Return a decrypted access token, refreshing first when it is about to expire."""
        adapter = self.adapters.get(integration.integration_type)
        if adapter.supports_refresh and needs_refresh(integration, self.settings.refresh_margin_seconds):
            try:
                integration = await self.refresh_integration(integration)
            except TokenRefreshFailed as exc:
                await self.store.record_refresh_failure(
                    integration, exc.describe(), self.settings.refresh_max_failures
                )
                raise
        return self.cipher.decrypt(integration.access_token)
