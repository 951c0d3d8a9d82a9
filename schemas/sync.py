"""Sync request and response schemas."""
from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    provider: Literal["gmail", "calendar"]
    incremental: bool = True
    overlap_hours: int = Field(0, ge=0, le=72)
    days_back: Optional[int] = Field(None, ge=1, le=365)


class SyncResult(BaseModel):
    batch_id: UUID
    inserted_count: int = Field(ge=0)
    skipped_count: int = Field(0, ge=0)
    lower_bound: Optional[datetime] = None
    pages: int = Field(0, ge=0)


class SyncFailure(BaseModel):
    error: Literal["not_connected", "connector_error"]
    message: str
