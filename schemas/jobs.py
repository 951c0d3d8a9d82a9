"""Job runner, batch status and undo schemas."""
from typing import Dict, List, Literal

from pydantic import BaseModel, Field

BatchState = Literal["not_found", "failed", "processing", "queued", "reverted", "completed"]


class RunJobsRequest(BaseModel):
    limit: int = Field(50, ge=1, le=500)


class RunJobsResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    errors: List[str] = Field(default_factory=list)


class KindCounts(BaseModel):
    queued: int = 0
    processing: int = 0
    done: int = 0
    error: int = 0
    reverted: int = 0


class BatchSummary(BaseModel):
    total_jobs: int = 0
    completed: int = 0
    failed: int = 0
    processing: int = 0
    queued: int = 0
    reverted: int = 0
    events_processed: int = 0
    contacts_linked: int = 0
    embeddings_created: int = 0


class BatchStatus(BaseModel):
    """Aggregate state of a batch's jobs.

    status is one of not_found, failed, processing, queued, completed, or
    reverted once every job of the batch has been undone.
    """

    status: BatchState
    summary: BatchSummary = Field(default_factory=BatchSummary)
    kinds: Dict[str, KindCounts] = Field(default_factory=dict)


class UndoResult(BaseModel):
    deleted_events: int = 0
    deleted_interactions: int = 0
    deleted_embeddings: int = 0
    affected_jobs: int = 0
