from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.config import Settings
from notifyhub.crypto import TokenCipher
from notifyhub.models.integration import ProviderType
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.services.token_service import TokenService
from notifyhub.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionTask:
    """Register a stored integration for provider change notifications.

    Runs after the integration row is committed, independently of the request
    that created it. ``attempts`` lets a caller requeue the same task.
    """

    integration_id: UUID
    provider_type: ProviderType
    attempts: int = 0
    created_at: dt.datetime = field(default_factory=utcnow)


class SubscriptionRunner:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        adapters: AdapterRegistry,
        cipher: TokenCipher,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.adapters = adapters
        self.cipher = cipher
        self.settings = settings

    async def run(self, task: SubscriptionTask) -> Optional[Dict[str, Any]]:
        """Execute ``task``; failures are logged and never raised."""
        task.attempts += 1
        try:
            return await self._subscribe(task)
        except Exception as exc:  # best effort: on-demand sync still works
            logger.error(
                "Change subscription for %s integration %s failed (attempt %s): %s",
                task.provider_type.value,
                task.integration_id,
                task.attempts,
                exc,
            )
            return None

    async def _subscribe(self, task: SubscriptionTask) -> Optional[Dict[str, Any]]:
        adapter = self.adapters.get(task.provider_type)
        async with self.session_factory() as session:
            tokens = TokenService(session, self.adapters, self.cipher, self.settings)
            integration = await tokens.store.get_by_id(task.integration_id)
            if integration is None:
                logger.warning("Integration %s vanished before subscription", task.integration_id)
                return None

            access_token = await tokens.get_valid_access_token(integration)
            updates = await adapter.subscribe(access_token, integration)
            if updates:
                await tokens.store.merge_metadata(integration.id, updates)
                logger.info(
                    "Registered %s change subscription for integration %s",
                    task.provider_type.value,
                    integration.id,
                )
            return updates
