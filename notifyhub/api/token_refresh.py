from __future__ import annotations

import hmac
import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.api.deps import get_adapters, get_cipher, get_session_factory
from notifyhub.config import Settings, get_settings
from notifyhub.crypto import TokenCipher
from notifyhub.errors import Unauthorized
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.schemas.integration import RefreshSweepResult
from notifyhub.services.refresh_scheduler import TokenRefreshScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/token-refresh", tags=["Token Refresh"])


@router.post("", response_model=RefreshSweepResult)
async def run_token_refresh(
    x_cron_secret: Optional[str] = Header(None),
    session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    adapters: AdapterRegistry = Depends(get_adapters),
    cipher: TokenCipher = Depends(get_cipher),
    settings: Settings = Depends(get_settings),
) -> RefreshSweepResult:
    """Refresh every token inside the expiry margin (scheduled trigger)."""
    if settings.cron_secret:
        if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.cron_secret):
            raise Unauthorized("Invalid cron secret")

    scheduler = TokenRefreshScheduler(session_factory, adapters, cipher, settings)
    result = await scheduler.run_sweep()
    return RefreshSweepResult(**result)
