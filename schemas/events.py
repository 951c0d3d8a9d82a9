"""Provider event schemas shared by connectors and ingestion."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProviderEvent(BaseModel):
    """One provider artifact as fetched, before it is stored."""
    source_id: Optional[str] = None
    occurred_at: datetime
    payload: Dict[str, Any]
    source_meta: Optional[Dict[str, Any]] = None


class EventPage(BaseModel):
    events: List[ProviderEvent] = Field(default_factory=list)
    next_cursor: Optional[str] = None
