"""Batch status aggregation, derived on read from the batch's jobs."""
import logging
from typing import Iterable
from uuid import UUID

from db import get_db
from db.models import Job
from db.repositories import jobs as jobs_repo
from schemas.jobs import BatchStatus, BatchSummary, KindCounts

logger = logging.getLogger(__name__)

# result key summed into the batch summary, per job kind
RESULT_TOTALS = {
    "normalize": ("normalized", "events_processed"),
    "extract_contacts": ("linked", "contacts_linked"),
    "embed": ("embedded", "embeddings_created"),
}


def summarize_jobs(jobs: Iterable[Job]) -> BatchStatus:
    """Aggregate a batch's jobs into one status.

    Precedence: failed > processing > queued > reverted (only when every job
    is reverted) > completed. No jobs at all means not_found. Result totals
    count done jobs only.
    """
    jobs = list(jobs)
    if not jobs:
        return BatchStatus(status="not_found")

    summary = BatchSummary(total_jobs=len(jobs))
    kinds: dict[str, KindCounts] = {}
    for job in jobs:
        counts = kinds.setdefault(job.kind, KindCounts())
        setattr(counts, job.status, getattr(counts, job.status) + 1)
        if job.status == "done":
            summary.completed += 1
            totals = RESULT_TOTALS.get(job.kind)
            if totals and job.result:
                key, field = totals
                setattr(summary, field, getattr(summary, field) + int(job.result.get(key) or 0))
        elif job.status == "error":
            summary.failed += 1
        elif job.status == "processing":
            summary.processing += 1
        elif job.status == "queued":
            summary.queued += 1
        elif job.status == "reverted":
            summary.reverted += 1

    if summary.failed:
        status = "failed"
    elif summary.processing:
        status = "processing"
    elif summary.queued:
        status = "queued"
    elif summary.reverted == summary.total_jobs:
        status = "reverted"
    else:
        status = "completed"
    return BatchStatus(status=status, summary=summary, kinds=kinds)


async def get_batch_status(user_id: UUID, batch_id: UUID) -> BatchStatus:
    """Status of a batch owned by the user; foreign batches are not_found."""
    async with get_db() as session:
        jobs = await jobs_repo.get_batch_jobs(session, user_id, batch_id)
    status = summarize_jobs(jobs)
    logger.info("Batch %s for user %s: %s", batch_id, user_id, status.status)
    return status
