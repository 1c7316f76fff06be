from __future__ import annotations

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from notifyhub.db import Base


class ProviderType(str, enum.Enum):
    GMAIL = "gmail"
    GOOGLE_DRIVE = "google-drive"
    SLACK = "slack"
    HUBSPOT = "hubspot"

    @property
    def category(self) -> str:
        return PROVIDER_CATEGORIES[self]

    @classmethod
    def parse(cls, value: str) -> "ProviderType":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Invalid integration type. Must be one of: {valid}") from None


PROVIDER_CATEGORIES = {
    ProviderType.GMAIL: "email-provider",
    ProviderType.GOOGLE_DRIVE: "drive-provider",
    ProviderType.SLACK: "chat-provider",
    ProviderType.HUBSPOT: "crm-provider",
}


class IntegrationStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ERROR = "error"


class Integration(Base):
    """One stored OAuth credential set binding a user to a provider."""

    __tablename__ = "integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    integration_type = Column(String(32), nullable=False)  # ProviderType value

    # Encrypted credentials (see notifyhub.crypto)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    status = Column(String(16), nullable=False, default=IntegrationStatus.ACTIVE.value)
    # Scopes, team_id / hub_id / email, watch channel ids
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    # Refresh failure tracking
    refresh_failures = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "integration_type", name="uq_integrations_user_type"),
    )

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType(self.integration_type)

    def __repr__(self) -> str:
        return f"<Integration(id={self.id}, type={self.integration_type}, status={self.status})>"
