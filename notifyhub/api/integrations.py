from __future__ import annotations

import logging
from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.api.deps import get_current_user_id, parse_provider
from notifyhub.db import get_db
from notifyhub.errors import IntegrationNotFound
from notifyhub.schemas.integration import IntegrationList, IntegrationOut
from notifyhub.services.token_store import TokenStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["Integrations"])


@router.get("", response_model=IntegrationList)
async def list_integrations(
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> IntegrationList:
    """The caller's connected integrations, without credentials."""
    integrations = await TokenStore(session).list_for_owner(user_id)
    return IntegrationList(
        integrations=[
            IntegrationOut(
                id=i.id,
                integration_type=i.integration_type,
                status=i.status,
                token_expires_at=i.token_expires_at,
                metadata=i.metadata_ or {},
                created_at=i.created_at,
                updated_at=i.updated_at,
            )
            for i in integrations
        ]
    )


@router.delete("/{integration_type}")
async def disconnect_integration(
    integration_type: str = Path(..., description="Integration type to disconnect"),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    provider_type = parse_provider(integration_type)
    if not await TokenStore(session).delete(user_id, provider_type):
        raise IntegrationNotFound(f"No {provider_type.value} integration to disconnect")
    logger.info("Owner %s disconnected %s", user_id, provider_type.value)
    return {"success": True, "message": f"{provider_type.value} integration disconnected"}
