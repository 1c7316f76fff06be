from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.errors import PersistenceFailed
from notifyhub.models.notification import Notification
from notifyhub.services.token_store import dialect_insert
from notifyhub.timeutil import utcnow

logger = logging.getLogger(__name__)


class NotificationSink:
    """Insert-if-absent storage for normalized notifications plus owner actions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, user_id: UUID, source_id: str) -> bool:
        stmt = (
            select(Notification.id)
            .where(Notification.user_id == user_id)
            .where(Notification.source_id == source_id)
            .limit(1)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc
        return result.scalar() is not None

    async def insert_if_absent(
        self,
        *,
        user_id: UUID,
        integration_id: Optional[UUID],
        source: str,
        source_id: str,
        title: str,
        body: str,
        metadata: Dict[str, Any],
        created_at: Optional[dt.datetime] = None,
    ) -> bool:
        """Insert one notification; ``False`` if (user_id, source_id) already exists."""
        stmt = dialect_insert(self.session, Notification.__table__).values(
            id=uuid.uuid4(),
            user_id=user_id,
            integration_id=integration_id,
            source=source,
            source_id=source_id,
            title=title,
            body=body,
            read=False,
            metadata=metadata,
            created_at=created_at or utcnow(),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "source_id"])
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except IntegrityError:
            # Concurrent duplicate delivery
            await self.session.rollback()
            return False
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("Failed to store notification %s: %s", source_id, exc)
            raise PersistenceFailed(details=source_id) from exc
        return (result.rowcount or 0) > 0

    async def list_for_owner(
        self, user_id: UUID, *, unread_only: bool = False, limit: int = 50, offset: int = 0
    ) -> List[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit).offset(offset)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc
        return list(result.scalars().all())

    async def count_unread(self, user_id: UUID) -> int:
        stmt = (
            select(func.count(Notification.id))
            .where(Notification.user_id == user_id)
            .where(Notification.read.is_(False))
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailed(details="read") from exc
        return int(result.scalar() or 0)

    async def _set_read(self, user_id: UUID, notification_id: Optional[UUID], read: bool) -> int:
        stmt = update(Notification).where(Notification.user_id == user_id)
        if notification_id is not None:
            stmt = stmt.where(Notification.id == notification_id)
        else:
            stmt = stmt.where(Notification.read.is_(False))
        stmt = stmt.values(read=read, read_at=utcnow() if read else None)
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceFailed(details="update") from exc
        return result.rowcount or 0

    async def mark_read(self, user_id: UUID, notification_id: UUID) -> bool:
        return await self._set_read(user_id, notification_id, True) > 0

    async def mark_unread(self, user_id: UUID, notification_id: UUID) -> bool:
        return await self._set_read(user_id, notification_id, False) > 0

    async def mark_all_read(self, user_id: UUID) -> int:
        return await self._set_read(user_id, None, True)

    async def delete(self, user_id: UUID, notification_id: UUID) -> bool:
        stmt = (
            delete(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.id == notification_id)
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceFailed(details="delete") from exc
        return (result.rowcount or 0) > 0
