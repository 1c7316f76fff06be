from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.config import Settings
from notifyhub.crypto import TokenCipher
from notifyhub.errors import HubError
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.services.token_service import TokenService
from notifyhub.timeutil import utcnow

logger = logging.getLogger(__name__)


class TokenRefreshScheduler:
    """Sweep integrations nearing expiry and refresh their credentials.

    ``run_sweep`` is what the scheduled endpoint and the cron script call.
    ``start``/``stop`` drive an optional in-process loop that runs the same
    sweep every ``refresh_interval_seconds``.
    """

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
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def run_sweep(self, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        cutoff = now + dt.timedelta(seconds=self.settings.refresh_margin_seconds)
        refreshed = 0
        errors: List[Dict[str, Any]] = []

        async with self.session_factory() as session:
            tokens = TokenService(session, self.adapters, self.cipher, self.settings)
            candidates = [(i.id, i.integration_type) for i in await tokens.store.list_expiring(cutoff)]
            logger.info("Token refresh sweep: %s candidate(s) expiring before %s", len(candidates), cutoff)

            for integration_id, integration_type in candidates:
                adapter = self.adapters.get(integration_type)
                if not adapter.supports_refresh:
                    continue
                # Reload per candidate: a rollback on an earlier one expires instances
                integration = await tokens.store.get_by_id(integration_id)
                if integration is None:
                    continue
                try:
                    await tokens.refresh_integration(integration)
                    refreshed += 1
                except Exception as exc:
                    message = exc.describe() if isinstance(exc, HubError) else str(exc)
                    logger.error("Refresh failed for %s integration %s: %s", integration_type, integration_id, message)
                    errors.append({"integration_id": str(integration_id), "type": integration_type, "error": message})
                    await self._record_failure(tokens, integration_id, message)

        return {"refreshed": refreshed, "failed": len(errors), "errors": errors}

    async def _record_failure(self, tokens: TokenService, integration_id, message: str) -> None:
        try:
            integration = await tokens.store.get_by_id(integration_id)
            if integration is not None:
                await tokens.store.record_refresh_failure(integration, message, self.settings.refresh_max_failures)
        except HubError as exc:
            logger.error("Could not record refresh failure for %s: %s", integration_id, exc.message)

    # ------------------------------------------------------------------
    # In-process loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        logger.info("Starting token refresh loop (every %ss)", self.settings.refresh_interval_seconds)
        self._task = asyncio.create_task(self._run_loop(), name="token_refresh_loop")

    async def stop(self) -> None:
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Stopped token refresh loop")

    async def _run_loop(self) -> None:
        while self.running:
            try:
                result = await self.run_sweep()
                logger.info("Token refresh sweep: %s refreshed, %s failed", result["refreshed"], result["failed"])
            except Exception as e:
                logger.error(f"Token refresh loop error: {e}")
            await asyncio.sleep(self.settings.refresh_interval_seconds)
