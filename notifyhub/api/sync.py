from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.api.deps import get_adapters, get_cipher, get_current_user_id, parse_provider
from notifyhub.config import Settings, get_settings
from notifyhub.crypto import TokenCipher
from notifyhub.db import get_db
from notifyhub.providers.registry import AdapterRegistry
from notifyhub.schemas.integration import SyncResult
from notifyhub.services.ingestion_service import IngestionPipeline

router = APIRouter(prefix="/api/sync", tags=["Sync"])


@router.post("/{integration_type}", response_model=SyncResult)
async def sync_integration(
    integration_type: str = Path(..., description="Integration type to pull recent events for"),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
    adapters: AdapterRegistry = Depends(get_adapters),
    cipher: TokenCipher = Depends(get_cipher),
    settings: Settings = Depends(get_settings),
) -> SyncResult:
    """Pull the most recent page of events for the caller's integration."""
    provider_type = parse_provider(integration_type)
    pipeline = IngestionPipeline(session, adapters, cipher, settings)
    counts = await pipeline.sync_recent(user_id, provider_type)
    return SyncResult(**counts)
