from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.errors import PersistenceFailed
from notifyhub.models.integration import Integration, IntegrationStatus, ProviderType
from notifyhub.timeutil import utcnow

logger = logging.getLogger(__name__)


def dialect_insert(session: AsyncSession, table):
    """``INSERT`` construct supporting ``ON CONFLICT`` for the bound dialect."""
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)


class TokenStore:
    """Persistence for ``Integration`` rows (one per owner and provider type).

    Credentials arrive here already encrypted; the store never sees plain
    tokens. Every write commits immediately so no network call ever runs
    inside an open transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _commit(self, action: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("Token store %s failed: %s", action, exc)
            raise PersistenceFailed(details=action) from exc

    async def upsert_integration(
        self,
        user_id: UUID,
        provider_type: ProviderType,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[dt.datetime],
        metadata: Dict[str, Any],
    ) -> Integration:
        """Insert or overwrite the row keyed by (user_id, integration_type)."""
        now = utcnow()
        values = {
            "user_id": user_id,
            "integration_type": provider_type.value,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_expires_at": expires_at,
            "status": IntegrationStatus.ACTIVE.value,
            "metadata": metadata,
            "refresh_failures": 0,
            "last_error": None,
            "updated_at": now,
        }
        stmt = dialect_insert(self.session, Integration.__table__).values(
            id=uuid.uuid4(), created_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "integration_type"],
            set_={key: stmt.excluded[key] for key in values if key not in ("user_id", "integration_type")},
        )
        try:
            await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("Failed to upsert %s integration: %s", provider_type.value, exc)
            raise PersistenceFailed(details=str(exc.__class__.__name__)) from exc
        await self._commit("upsert")

        integration = await self.get(user_id, provider_type)
        if integration is None:
            raise PersistenceFailed("Integration missing after upsert")
        return integration

    async def get(self, user_id: UUID, provider_type: ProviderType) -> Optional[Integration]:
        stmt = (
            select(Integration)
            .where(Integration.user_id == user_id)
            .where(Integration.integration_type == provider_type.value)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc
        return result.scalars().first()

    async def get_active(self, user_id: UUID, provider_type: ProviderType) -> Optional[Integration]:
        integration = await self.get(user_id, provider_type)
        if integration is None or integration.status != IntegrationStatus.ACTIVE.value:
            return None
        return integration

    async def get_by_id(self, integration_id: UUID) -> Optional[Integration]:
        try:
            return await self.session.get(Integration, integration_id, populate_existing=True)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc

    async def list_active(self, provider_type: ProviderType) -> List[Integration]:
        stmt = (
            select(Integration)
            .where(Integration.integration_type == provider_type.value)
            .where(Integration.status == IntegrationStatus.ACTIVE.value)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc
        return list(result.scalars().all())

    async def list_expiring(self, cutoff: dt.datetime) -> List[Integration]:
        """Integrations whose expiry is at or before ``cutoff``.

        Rows already in ``error`` or ``revoked`` are left for the owner to
        reconnect.
        """
        stmt = (
            select(Integration)
            .where(Integration.token_expires_at.isnot(None))
            .where(Integration.token_expires_at <= cutoff)
            .where(Integration.status.in_([IntegrationStatus.ACTIVE.value, IntegrationStatus.EXPIRED.value]))
            .order_by(Integration.token_expires_at)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc
        return list(result.scalars().all())

    async def list_for_owner(self, user_id: UUID) -> List[Integration]:
        stmt = select(Integration).where(Integration.user_id == user_id).order_by(Integration.created_at)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc
        return list(result.scalars().all())

    async def update_credentials(
        self,
        integration: Integration,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[dt.datetime],
    ) -> Integration:
        """Store refreshed credentials and reset the failure tracking."""
        integration.access_token = access_token
        if refresh_token:
            integration.refresh_token = refresh_token
        integration.token_expires_at = expires_at
        integration.status = IntegrationStatus.ACTIVE.value
        integration.refresh_failures = 0
        integration.last_error = None
        integration.updated_at = utcnow()
        await self._commit("update_credentials")
        return integration

    async def record_refresh_failure(self, integration: Integration, error: str, max_failures: int) -> Integration:
        """Count one more consecutive failure; flip to ``error`` at ``max_failures``."""
        integration.refresh_failures = (integration.refresh_failures or 0) + 1
        integration.last_error = error[:1000]
        if integration.refresh_failures >= max_failures:
            integration.status = IntegrationStatus.ERROR.value
            logger.warning(
                "Integration %s marked error after %s consecutive refresh failures",
                integration.id,
                integration.refresh_failures,
            )
        integration.updated_at = utcnow()
        await self._commit("record_refresh_failure")
        return integration

    async def merge_metadata(self, integration_id: UUID, updates: Dict[str, Any]) -> Optional[Integration]:
        integration = await self.get_by_id(integration_id)
        if integration is None:
            return None
        # Reassign so the JSON column is flagged dirty
        integration.metadata_ = {**(integration.metadata_ or {}), **updates}
        integration.updated_at = utcnow()
        await self._commit("merge_metadata")
        return integration

    async def set_status(self, integration_id: UUID, status: IntegrationStatus) -> None:
        stmt = (
            update(Integration)
            .where(Integration.id == integration_id)
            .values(status=status.value, updated_at=utcnow())
        )
        try:
            await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceFailed(details="set_status") from exc
        await self._commit("set_status")

    async def delete(self, user_id: UUID, provider_type: ProviderType) -> bool:
        stmt = (
            delete(Integration)
            .where(Integration.user_id == user_id)
            .where(Integration.integration_type == provider_type.value)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceFailed(details="delete") from exc
        await self._commit("delete")
        return (result.rowcount or 0) > 0
