from .events import ProviderEvent, EventPage
from .sync import SyncRequest, SyncResult, SyncFailure
from .jobs import (
    RunJobsRequest,
    RunJobsResult,
    KindCounts,
    BatchSummary,
    BatchStatus,
    UndoResult,
)

__all__ = [
    "ProviderEvent", "EventPage",
    "SyncRequest", "SyncResult", "SyncFailure",
    "RunJobsRequest", "RunJobsResult", "KindCounts", "BatchSummary",
    "BatchStatus", "UndoResult",
]
