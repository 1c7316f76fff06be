from __future__ import annotations

import logging
from typing import Callable
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.api.deps import get_adapters, get_cipher, get_current_user_id, get_session_factory
from notifyhub.config import Settings, get_settings
from notifyhub.crypto import TokenCipher
from notifyhub.db import get_db
from notifyhub.errors import ValidationError
from notifyhub.providers.registry import OAUTH_GROUPS, AdapterRegistry
from notifyhub.schemas.integration import IntegrationSummary, OAuthExchangeRequest, OAuthExchangeResponse
from notifyhub.services.oauth_service import OAuthExchangeService
from notifyhub.services.subscription_tasks import SubscriptionRunner, SubscriptionTask

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["OAuth"])


@router.post("/{provider}", response_model=OAuthExchangeResponse)
async def exchange_code(
    request: OAuthExchangeRequest,
    background_tasks: BackgroundTasks,
    provider: str = Path(..., description="OAuth group: google, slack or hubspot"),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
    adapters: AdapterRegistry = Depends(get_adapters),
    cipher: TokenCipher = Depends(get_cipher),
    session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> OAuthExchangeResponse:
    """Exchange an authorization code and store the resulting integration."""
    if provider not in OAUTH_GROUPS:
        raise ValidationError(f"Unknown OAuth provider: {provider}")
    integration_type = request.integration_type
    if integration_type is None:
        allowed = OAUTH_GROUPS[provider]
        if len(allowed) != 1:
            raise ValidationError("integration_type is required")
        integration_type = allowed[0].value
    adapter = adapters.for_oauth_group(provider, integration_type)

    runner = SubscriptionRunner(session_factory, adapters, cipher, settings)

    def schedule(task: SubscriptionTask) -> None:
        background_tasks.add_task(runner.run, task)

    service = OAuthExchangeService(session, adapters, cipher, settings, schedule=schedule)
    integration = await service.exchange_and_store(
        adapter.provider_type, request.code, request.redirect_uri, user_id
    )
    return OAuthExchangeResponse(
        message=f"{adapter.provider_type.value} integration connected",
        integration=IntegrationSummary(
            id=integration.id,
            type=integration.integration_type,
            status=integration.status,
            created_at=integration.created_at,
        ),
    )
