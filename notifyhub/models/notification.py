from __future__ import annotations

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from notifyhub.db import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    integration_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    # Content
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)

    # Source info
    source = Column(String(32), nullable=False)  # gmail, google-drive, slack, hubspot
    source_id = Column(String(255), nullable=False)

    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

    # Thread id, sender, labels, channel, ...
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    # Provider event time when known, else ingestion time
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "source_id", name="uq_notifications_user_source_id"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )
