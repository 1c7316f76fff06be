from __future__ import annotations

from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.api.deps import get_current_user_id
from notifyhub.db import get_db
from notifyhub.errors import NotificationNotFound
from notifyhub.schemas.notification import NotificationList, NotificationOut
from notifyhub.services.notification_sink import NotificationSink

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationList)
async def list_notifications(
    unread_only: bool = Query(False, description="Only unread notifications"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> NotificationList:
    """The caller's feed, newest first."""
    sink = NotificationSink(session)
    rows = await sink.list_for_owner(user_id, unread_only=unread_only, limit=limit, offset=offset)
    return NotificationList(
        notifications=[NotificationOut.model_validate(row) for row in rows],
        unread_count=await sink.count_unread(user_id),
    )


@router.post("/read-all")
async def mark_all_read(
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    updated = await NotificationSink(session).mark_all_read(user_id)
    return {"success": True, "updated": updated}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: UUID = Path(...),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    if not await NotificationSink(session).mark_read(user_id, notification_id):
        raise NotificationNotFound()
    return {"success": True}


@router.post("/{notification_id}/unread")
async def mark_unread(
    notification_id: UUID = Path(...),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    if not await NotificationSink(session).mark_unread(user_id, notification_id):
        raise NotificationNotFound()
    return {"success": True}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: UUID = Path(...),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    if not await NotificationSink(session).delete(user_id, notification_id):
        raise NotificationNotFound()
    return {"success": True}
