"""Job queue repository — enqueue, atomic claim, outcome recording.

The jobs table is the queue. The only mutual exclusion between concurrent
runners is the conditional update in claim_jobs().
"""
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Job

logger = logging.getLogger(__name__)


async def enqueue(
    session: AsyncSession,
    user_id: UUID,
    kind: str,
    payload: Optional[dict[str, Any]] = None,
    batch_id: Optional[UUID] = None,
) -> Job:
    """Append a queued job with zero attempts."""
    job = Job(
        user_id=user_id,
        kind=kind,
        payload=payload or {},
        batch_id=batch_id,
        status="queued",
        attempts=0,
    )
    session.add(job)
    await session.flush()
    return job


async def enqueue_many(session: AsyncSession, items: Iterable[dict[str, Any]]) -> list[Job]:
    """Enqueue several jobs in one flush.

    item keys: user_id, kind, payload, batch_id
    """
    jobs = [
        Job(
            user_id=item["user_id"],
            kind=item["kind"],
            payload=item.get("payload") or {},
            batch_id=item.get("batch_id"),
            status="queued",
            attempts=0,
        )
        for item in items
    ]
    session.add_all(jobs)
    await session.flush()
    return jobs


async def _batch_reverted(session: AsyncSession, user_id: UUID, batch_id: UUID) -> bool:
    result = await session.execute(
        select(Job.id)
        .where(Job.user_id == user_id)
        .where(Job.batch_id == batch_id)
        .where(Job.status == "reverted")
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def ensure_stage_job(
    session: AsyncSession,
    user_id: UUID,
    kind: str,
    batch_id: Optional[UUID],
    payload: Optional[dict[str, Any]] = None,
) -> Optional[Job]:
    """Enqueue `kind` for a batch unless a live or finished job already exists.

    Returns the new job, or None when one was already queued, processing or
    done, or when the batch has been undone.
    """
    if batch_id is not None and await _batch_reverted(session, user_id, batch_id):
        logger.info("Batch %s was undone; not enqueuing %s", batch_id, kind)
        return None
    stmt = (
        select(Job.id)
        .where(Job.user_id == user_id)
        .where(Job.kind == kind)
        .where(Job.status.in_(("queued", "processing", "done")))
        .limit(1)
    )
    if batch_id is None:
        stmt = stmt.where(Job.batch_id.is_(None))
    else:
        stmt = stmt.where(Job.batch_id == batch_id)
    existing = await session.execute(stmt)
    if existing.scalar_one_or_none() is not None:
        return None
    return await enqueue(session, user_id, kind, payload, batch_id)


async def claim_jobs(
    session: AsyncSession,
    limit: int,
    user_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> list[Job]:
    """Atomically move up to `limit` runnable queued jobs to processing.

    Oldest first by seq. Rows locked by a concurrent claim are skipped, and
    the outer status predicate makes the transition conditional, so a job
    is handed to at most one caller.
    """
    now = now or datetime.now(timezone.utc)
    candidates = (
        select(Job.id)
        .where(Job.status == "queued")
        .where(or_(Job.run_after.is_(None), Job.run_after <= now))
        .order_by(Job.seq)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if user_id is not None:
        candidates = candidates.where(Job.user_id == user_id)

    result = await session.execute(
        update(Job)
        .where(Job.id.in_(candidates))
        .where(Job.status == "queued")
        .values(status="processing", updated_at=func.now())
        .returning(Job),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    claimed = sorted(result.scalars().all(), key=lambda j: j.seq)
    if claimed:
        logger.info("Claimed %d jobs", len(claimed))
    return claimed


def _owned(stmt, job_id: UUID, attempts: Optional[int]):
    stmt = stmt.where(Job.id == job_id).where(Job.status == "processing")
    if attempts is not None:
        stmt = stmt.where(Job.attempts == attempts)
    return stmt


async def touch(session: AsyncSession, job_id: UUID, attempts: int) -> bool:
    """Refresh updated_at of a job this runner still owns.

    A claim is owned while the job is processing with the attempts count it
    was claimed with; stuck-job recovery bumps attempts, so a recovered and
    reclaimed job no longer matches. Returns False once ownership is lost.
    """
    updated = await session.execute(
        _owned(update(Job), job_id, attempts)
        .values(updated_at=func.now())
        .returning(Job.id)
    )
    await session.flush()
    return updated.scalar_one_or_none() is not None


async def mark_done(
    session: AsyncSession,
    job_id: UUID,
    result: Optional[dict[str, Any]] = None,
    *,
    attempts: Optional[int] = None,
) -> bool:
    """Record success. Returns False if the job left processing meanwhile.

    With `attempts`, only the claim holding that attempts count may record.
    """
    updated = await session.execute(
        _owned(update(Job), job_id, attempts)
        .values(status="done", last_error=None, result=result, updated_at=func.now())
        .returning(Job.id)
    )
    await session.flush()
    return updated.scalar_one_or_none() is not None


async def mark_failed(
    session: AsyncSession,
    job: Job,
    error: str,
    *,
    max_attempts: int,
    retry_at: Optional[datetime] = None,
    retryable: bool = True,
) -> Optional[str]:
    """Record a failed attempt.

    attempts is incremented; the job is requeued (claimable from retry_at)
    while attempts < max_attempts and the error is retryable, otherwise it
    stays in error. Returns the new status, or None if the job left
    processing or was reclaimed after stuck recovery meanwhile.
    """
    attempts = job.attempts + 1
    requeue = retryable and attempts < max_attempts
    status = "queued" if requeue else "error"
    updated = await session.execute(
        _owned(update(Job), job.id, job.attempts)
        .values(
            status=status,
            attempts=attempts,
            last_error=error,
            run_after=retry_at if requeue else None,
            updated_at=func.now(),
        )
        .returning(Job.id)
    )
    await session.flush()
    if updated.scalar_one_or_none() is None:
        return None
    return status


async def defer(
    session: AsyncSession,
    job_id: UUID,
    until: datetime,
    *,
    attempts: Optional[int] = None,
) -> bool:
    """Return a claimed job to the queue without consuming an attempt."""
    updated = await session.execute(
        _owned(update(Job), job_id, attempts)
        .values(status="queued", run_after=until, updated_at=func.now())
        .returning(Job.id)
    )
    await session.flush()
    return updated.scalar_one_or_none() is not None


async def requeue_stuck(
    session: AsyncSession, older_than: datetime, max_attempts: int
) -> int:
    """Recover jobs left in processing since before `older_than`.

    Each recovery counts as a failed attempt; jobs out of attempts move to
    error instead. Returns the number of jobs touched.
    """
    attempts = Job.attempts + 1
    requeued = await session.execute(
        update(Job)
        .where(Job.status == "processing")
        .where(Job.updated_at < older_than)
        .where(attempts < max_attempts)
        .values(
            status="queued",
            attempts=attempts,
            last_error="Recovered after exceeding processing time",
            run_after=None,
            updated_at=func.now(),
        )
        .returning(Job.id)
    )
    failed = await session.execute(
        update(Job)
        .where(Job.status == "processing")
        .where(Job.updated_at < older_than)
        .where(attempts >= max_attempts)
        .values(
            status="error",
            attempts=attempts,
            last_error="Exceeded processing time on final attempt",
            updated_at=func.now(),
        )
        .returning(Job.id)
    )
    await session.flush()
    count = len(requeued.fetchall()) + len(failed.fetchall())
    if count:
        logger.warning("Recovered %d stuck jobs", count)
    return count


async def get_by_id(session: AsyncSession, job_id: UUID) -> Optional[Job]:
    result = await session.execute(select(Job).where(Job.id == job_id))
    return result.scalar_one_or_none()


async def get_batch_jobs(
    session: AsyncSession, user_id: UUID, batch_id: UUID
) -> list[Job]:
    """Return every job of a batch owned by the user, in enqueue order."""
    result = await session.execute(
        select(Job)
        .where(Job.user_id == user_id)
        .where(Job.batch_id == batch_id)
        .order_by(Job.seq)
    )
    return list(result.scalars().all())


async def get_stage_statuses(
    session: AsyncSession, user_id: UUID, batch_id: UUID, kind: str
) -> set[str]:
    """Return the distinct statuses of a batch's jobs of one kind."""
    result = await session.execute(
        select(Job.status)
        .where(Job.user_id == user_id)
        .where(Job.batch_id == batch_id)
        .where(Job.kind == kind)
        .distinct()
    )
    return {row[0] for row in result.all()}


async def get_job_counts(
    session: AsyncSession, user_id: Optional[UUID] = None
) -> dict[str, dict[str, int]]:
    """Return {kind: {status: count}} across the queue."""
    stmt = select(Job.kind, Job.status, func.count(Job.id)).group_by(Job.kind, Job.status)
    if user_id is not None:
        stmt = stmt.where(Job.user_id == user_id)
    result = await session.execute(stmt)
    counts: dict[str, dict[str, int]] = {}
    for kind, status, value in result.all():
        counts.setdefault(kind, {})[status] = int(value)
    return counts


async def revert_batch(session: AsyncSession, user_id: UUID, batch_id: UUID) -> int:
    """Mark every job of a batch as reverted. Returns the count changed."""
    result = await session.execute(
        update(Job)
        .where(Job.user_id == user_id)
        .where(Job.batch_id == batch_id)
        .where(Job.status != "reverted")
        .values(status="reverted", run_after=None, updated_at=func.now())
        .returning(Job.id)
    )
    await session.flush()
    return len(result.fetchall())
