from __future__ import annotations

import logging
from functools import lru_cache
from typing import Callable, Optional
from uuid import UUID

from fastapi import Header
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.config import get_settings
from notifyhub.crypto import TokenCipher, build_cipher
from notifyhub.db import SUPABASE, AsyncSessionLocal
from notifyhub.errors import Unauthorized, ValidationError
from notifyhub.models.integration import ProviderType
from notifyhub.providers.registry import AdapterRegistry, build_adapters

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_adapters() -> AdapterRegistry:
    return build_adapters(get_settings())


@lru_cache(maxsize=1)
def get_cipher() -> TokenCipher:
    return build_cipher(get_settings())


def get_session_factory() -> Callable[[], AsyncSession]:
    """Session factory for work that outlives the request (background tasks)."""
    return AsyncSessionLocal


def parse_provider(integration_type: str) -> ProviderType:
    try:
        return ProviderType.parse(integration_type)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


async def get_current_user_id(
    authorization: Optional[str] = Header(None),
) -> UUID:
    """Resolve the caller's bearer token to their user id via Supabase auth."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthorized("Missing bearer token")
    if SUPABASE is None:
        logger.error("Supabase is not configured; cannot authenticate requests")
        raise Unauthorized("Authentication is not configured")

    try:
        response = await run_in_threadpool(SUPABASE.auth.get_user, token)
    except Exception as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise Unauthorized("Invalid or expired token") from exc

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        raise Unauthorized("Invalid or expired token")
    return UUID(str(user.id))
