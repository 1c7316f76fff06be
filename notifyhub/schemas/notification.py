from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import UUID4, BaseModel, Field


class NotificationOut(BaseModel):
    id: UUID4
    integration_id: Optional[UUID4] = None
    title: str
    body: Optional[str] = None
    source: str
    source_id: str
    read: bool = False
    read_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        populate_by_name = True


class NotificationList(BaseModel):
    notifications: List[NotificationOut]
    unread_count: int
