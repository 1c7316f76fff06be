from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Path, Request
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.api.deps import get_adapters, get_cipher, parse_provider
from notifyhub.config import Settings, get_settings
from notifyhub.crypto import TokenCipher
from notifyhub.db import get_db
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.services.ingestion_service import IngestionPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/{provider}")
async def receive_webhook(
    request: Request,
    provider: str = Path(..., description="slack, google-drive, gmail or hubspot"),
    session: AsyncSession = Depends(get_db),
    adapters: AdapterRegistry = Depends(get_adapters),
    cipher: TokenCipher = Depends(get_cipher),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Receive a provider push.

    The raw body is passed through untouched because Slack signs the exact
    bytes. Unmatched or failed events are still acknowledged with 200 so the
    provider does not redeliver.
    """
    provider_type = parse_provider(provider)
    raw_body = await request.body()
    pipeline = IngestionPipeline(session, adapters, cipher, settings)
    return await pipeline.handle_webhook(
        provider_type, raw_body, dict(request.headers), dict(request.query_params)
    )
