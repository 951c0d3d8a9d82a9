"""Job runner: claim queued jobs, dispatch them, record the outcome.

Every step runs in its own short session so a claim is committed before
any handler starts, and a handler's rollback never hides its outcome:
  1. claim (atomic, FIFO by seq)
  2. ownership check: the job is still processing under this claim
  3. stage readiness check
  4. handler body, bounded by JOB_TIMEOUT_SECONDS, with a heartbeat
     keeping updated_at fresh so stuck recovery leaves it alone
  5. outcome: done / requeued with backoff / error / deferred

Outcome writes carry the claim's attempts count, so a runner whose job was
recovered and reclaimed elsewhere cannot record over the new owner.
"""
import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from db.models import Job
from db.repositories import jobs as jobs_repo
from pipeline.errors import StageNotReady, UnknownJobKind, UpstreamStageError
from schemas.jobs import RunJobsRequest, RunJobsResult
from stages import HANDLERS, PREDECESSORS
from tools.retry import RetryPolicy

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, Job], Awaitable[dict]]


def max_attempts() -> int:
    return int(os.environ.get("JOB_MAX_ATTEMPTS", "5"))


def job_timeout(kind: str) -> float:
    if kind == "provider_sync":
        return float(os.environ.get("SYNC_TIMEOUT_SECONDS", "900"))
    return float(os.environ.get("JOB_TIMEOUT_SECONDS", "300"))


def db_timeout() -> float:
    return float(os.environ.get("JOB_DB_TIMEOUT_SECONDS", "10"))


def defer_seconds() -> float:
    return float(os.environ.get("JOB_DEFER_SECONDS", "5"))


def stuck_minutes() -> float:
    return float(os.environ.get("JOB_STUCK_MINUTES", "10"))


def heartbeat_seconds() -> float:
    return max(stuck_minutes() * 60 / 3, 0.01)


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts(),
        base_delay=float(os.environ.get("JOB_RETRY_BASE_SECONDS", "1")),
        max_delay=float(os.environ.get("JOB_RETRY_MAX_SECONDS", "300")),
    )


def check_stage_ready(kind: str, predecessor_statuses: set[str]) -> None:
    """Raise unless the predecessor stage of a batch allows `kind` to run.

    No predecessor job at all counts as ready. Any predecessor still queued
    or processing raises StageNotReady; a predecessor that only ever ended
    in error or reverted raises UpstreamStageError.
    """
    predecessor = PREDECESSORS.get(kind)
    if predecessor is None or not predecessor_statuses:
        return
    if predecessor_statuses & {"queued", "processing"}:
        raise StageNotReady(f"{predecessor} has not finished")
    if "done" not in predecessor_statuses:
        state = "reverted" if predecessor_statuses == {"reverted"} else "failed"
        raise UpstreamStageError(f"{predecessor} {state}")


async def recover_stuck_jobs(
    older_than_minutes: Optional[float] = None,
    attempts: Optional[int] = None,
) -> int:
    """Requeue jobs left in processing by a crashed or hung runner."""
    minutes = older_than_minutes if older_than_minutes is not None else stuck_minutes()
    older_than = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    async with get_db() as session:
        return await asyncio.wait_for(
            jobs_repo.requeue_stuck(session, older_than, attempts or max_attempts()),
            timeout=db_timeout(),
        )


async def _predecessor_statuses(job: Job) -> set[str]:
    predecessor = PREDECESSORS.get(job.kind)
    if predecessor is None or job.batch_id is None:
        return set()
    async with get_db() as session:
        return await jobs_repo.get_stage_statuses(
            session, job.user_id, job.batch_id, predecessor
        )


async def _claim_still_owned(job: Job) -> bool:
    return await _record(lambda s: jobs_repo.touch(s, job.id, job.attempts))


async def _heartbeat(job: Job) -> None:
    interval = heartbeat_seconds()
    while True:
        await asyncio.sleep(interval)
        try:
            owned = await _claim_still_owned(job)
        except Exception:
            logger.exception("Heartbeat for job %s failed", job.id)
            continue
        if not owned:
            logger.warning("Job %s (%s) was reclaimed by another runner", job.id, job.kind)
            return


async def _run_handler(handler: Handler, job: Job) -> dict:
    heartbeat = asyncio.create_task(_heartbeat(job))
    try:
        async with get_db() as session:
            return await handler(session, job) or {}
    finally:
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)


async def _record(action: Callable[[AsyncSession], Awaitable]):
    async with get_db() as session:
        return await asyncio.wait_for(action(session), timeout=db_timeout())


async def process_job(
    job: Job,
    handlers: Dict[str, Handler],
    policy: RetryPolicy,
    result: RunJobsResult,
) -> None:
    """Run one claimed job and record its outcome in `result`."""
    if not await _claim_still_owned(job):
        logger.warning("Job %s (%s) is no longer held by this claim; skipping", job.id, job.kind)
        return
    try:
        handler = handlers.get(job.kind)
        if handler is None:
            raise UnknownJobKind(f"No handler for job kind {job.kind!r}")
        check_stage_ready(job.kind, await _predecessor_statuses(job))
        outcome = await asyncio.wait_for(_run_handler(handler, job), timeout=job_timeout(job.kind))
    except StageNotReady as exc:
        until = datetime.now(timezone.utc) + timedelta(seconds=defer_seconds())
        await _record(lambda s: jobs_repo.defer(s, job.id, until, attempts=job.attempts))
        result.deferred += 1
        logger.info("Job %s (%s) deferred: %s", job.id, job.kind, exc)
        return
    except asyncio.TimeoutError:
        await _fail(job, f"Timed out after {job_timeout(job.kind):.0f}s", True, policy, result)
        return
    except Exception as exc:
        await _fail(job, f"{type(exc).__name__}: {exc}", getattr(exc, "retryable", True), policy, result)
        return

    recorded = await _record(lambda s: jobs_repo.mark_done(s, job.id, outcome, attempts=job.attempts))
    if recorded:
        result.succeeded += 1
        logger.info("Job %s (%s) done: %s", job.id, job.kind, outcome)
    else:
        logger.warning("Job %s (%s) finished but was no longer processing", job.id, job.kind)


async def _fail(
    job: Job,
    message: str,
    retryable: bool,
    policy: RetryPolicy,
    result: RunJobsResult,
) -> None:
    retry_at = policy.next_run_at(job.attempts + 1)
    status = await _record(lambda s: jobs_repo.mark_failed(
        s,
        job,
        message,
        max_attempts=policy.max_attempts,
        retry_at=retry_at,
        retryable=retryable,
    ))
    result.failed += 1
    result.errors.append(f"{job.id}: {message}")
    if status is None:
        logger.warning("Job %s (%s) failed but was no longer held by this claim: %s", job.id, job.kind, message)
    elif status == "queued":
        logger.warning(
            "Job %s (%s) attempt %d failed, retrying at %s: %s",
            job.id, job.kind, job.attempts + 1, retry_at.isoformat(), message,
        )
    else:
        logger.error(
            "Job %s (%s) failed permanently after %d attempts: %s",
            job.id, job.kind, job.attempts + 1, message,
        )


async def _process_isolated(
    job: Job,
    handlers: Dict[str, Handler],
    policy: RetryPolicy,
    result: RunJobsResult,
) -> None:
    try:
        await process_job(job, handlers, policy, result)
    except Exception as exc:
        logger.exception("Job %s (%s) could not be recorded", job.id, job.kind)
        result.failed += 1
        result.errors.append(f"{job.id}: {type(exc).__name__}: {exc}")


async def run_pending_jobs(
    limit: int = 50,
    *,
    user_id: Optional[UUID] = None,
    handlers: Optional[Dict[str, Handler]] = None,
    retry_policy: Optional[RetryPolicy] = None,
    concurrency: int = 1,
    recover_stuck: bool = True,
) -> RunJobsResult:
    """Claim up to `limit` queued jobs and run them.

    Jobs run one at a time in claim order unless concurrency > 1.
    """
    limit = RunJobsRequest(limit=limit).limit
    handlers = handlers if handlers is not None else HANDLERS
    policy = retry_policy or default_retry_policy()
    result = RunJobsResult()

    if recover_stuck:
        await recover_stuck_jobs(attempts=policy.max_attempts)

    async with get_db() as session:
        jobs = await asyncio.wait_for(
            jobs_repo.claim_jobs(session, limit, user_id), timeout=db_timeout()
        )
    result.processed = len(jobs)
    if not jobs:
        return result

    if concurrency <= 1:
        for job in jobs:
            await _process_isolated(job, handlers, policy, result)
    else:
        semaphore = asyncio.Semaphore(concurrency)

        async def bounded(job: Job) -> None:
            async with semaphore:
                await _process_isolated(job, handlers, policy, result)

        await asyncio.gather(*(bounded(job) for job in jobs))

    logger.info(
        "Processed %d jobs: %d succeeded, %d failed, %d deferred",
        result.processed, result.succeeded, result.failed, result.deferred,
    )
    return result
