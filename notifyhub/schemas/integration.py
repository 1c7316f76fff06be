from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import UUID4, BaseModel, Field


class OAuthExchangeRequest(BaseModel):
    code: str
    integration_type: Optional[str] = None
    redirect_uri: Optional[str] = None
    state: Optional[str] = None


class IntegrationSummary(BaseModel):
    id: UUID4
    type: str
    status: str
    created_at: Optional[datetime] = None


class OAuthExchangeResponse(BaseModel):
    success: bool = True
    message: str
    integration: IntegrationSummary


class IntegrationOut(BaseModel):
    """Integration as shown to its owner; credentials are never included."""

    id: UUID4
    integration_type: str
    status: str
    token_expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IntegrationList(BaseModel):
    integrations: List[IntegrationOut]


class SyncResult(BaseModel):
    success: bool = True
    total: int
    new: int
    existing: int
    failed: int


class RefreshError(BaseModel):
    integration_id: str
    type: str
    error: str


class RefreshSweepResult(BaseModel):
    success: bool = True
    refreshed: int
    failed: int
    errors: List[RefreshError] = []
