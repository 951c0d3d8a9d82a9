"""Integration tests for the repositories and the pipeline against PostgreSQL."""
import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

# DATABASE_URL must be set in the environment (or .env) and migrated with
# `alembic upgrade head` before running these tests.
# Example: export DATABASE_URL="postgresql+asyncpg://crm:<password>@<host>:5432/crm"

from db import dispose_engine, get_db
from db.models import EMBEDDING_DIM
from db.repositories import contacts as contacts_repo
from db.repositories import jobs as jobs_repo
from db.repositories import raw_events as raw_events_repo
from pipeline.batch_status import get_batch_status
from pipeline.ingestion import run_sync
from pipeline.runner import process_job, run_pending_jobs
from pipeline.undo import undo_batch
from schemas.events import EventPage, ProviderEvent
from schemas.jobs import RunJobsResult
from stages.normalize import handle_normalize
from tools.retry import RetryPolicy

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not os.environ.get("DATABASE_URL"), reason="DATABASE_URL is not set"),
]

NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest_asyncio.fixture(autouse=True)
async def _engine():
    yield
    # The pool is bound to the test's event loop.
    await dispose_engine()


def _event(source_id, hours_ago=1, sender="someone@example.com"):
    return {
        "source_id": source_id,
        "occurred_at": NOW - timedelta(hours=hours_ago),
        "payload": {
            "id": source_id,
            "snippet": f"message {source_id}",
            "payload": {"headers": [
                {"name": "From", "value": sender},
                {"name": "Subject", "value": f"Subject {source_id}"},
            ]},
        },
        "source_meta": {"label_ids": ["INBOX"]},
    }


class ListConnector:
    provider = "gmail"

    def __init__(self, events):
        self.events = events

    async def fetch_page(self, user_id, since, until, cursor=None):
        return EventPage(events=[ProviderEvent(**e) for e in self.events])


# ---------------------------------------------------------------------------
# Raw event store
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_raw_event_insert_is_idempotent():
    """Re-ingesting the same source ids inserts nothing and keeps the first batch id."""
    user_id = uuid.uuid4()
    first_batch = uuid.uuid4()
    events = [_event("a"), _event("b"), _event("a")]

    async with get_db() as session:
        inserted, skipped = await raw_events_repo.insert_if_absent(
            session, user_id, "gmail", events, first_batch
        )
    assert (inserted, skipped) == (2, 1)

    async with get_db() as session:
        inserted, skipped = await raw_events_repo.insert_if_absent(
            session, user_id, "gmail", events, uuid.uuid4()
        )
    assert (inserted, skipped) == (0, 3)

    async with get_db() as session:
        assert await raw_events_repo.count_by_batch(session, user_id, first_batch) == 2


@pytest.mark.asyncio
async def test_same_source_id_is_distinct_per_provider():
    user_id = uuid.uuid4()
    async with get_db() as session:
        gmail = await raw_events_repo.insert_if_absent(session, user_id, "gmail", [_event("x")])
        calendar = await raw_events_repo.insert_if_absent(session, user_id, "calendar", [_event("x")])
    assert gmail == (1, 0)
    assert calendar == (1, 0)


@pytest.mark.asyncio
async def test_latest_occurred_at():
    user_id = uuid.uuid4()
    async with get_db() as session:
        assert await raw_events_repo.get_latest_occurred_at(session, user_id, "gmail") is None
        await raw_events_repo.insert_if_absent(
            session, user_id, "gmail", [_event("old", hours_ago=48), _event("new", hours_ago=2)]
        )
    async with get_db() as session:
        latest = await raw_events_repo.get_latest_occurred_at(session, user_id, "gmail")
    assert latest == NOW - timedelta(hours=2)


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job():
    """Two claims racing over the same queue hand each job to exactly one caller."""
    user_id = uuid.uuid4()
    async with get_db() as session:
        await jobs_repo.enqueue_many(session, [
            {"user_id": user_id, "kind": "normalize", "payload": {}} for _ in range(10)
        ])

    async def claim():
        async with get_db() as session:
            return await jobs_repo.claim_jobs(session, 6, user_id)

    first, second = await asyncio.gather(claim(), claim())
    ids_first = {job.id for job in first}
    ids_second = {job.id for job in second}
    assert not ids_first & ids_second
    assert len(ids_first | ids_second) == 10


@pytest.mark.asyncio
async def test_claim_is_fifo_and_respects_run_after():
    user_id = uuid.uuid4()
    async with get_db() as session:
        jobs = await jobs_repo.enqueue_many(session, [
            {"user_id": user_id, "kind": "normalize", "payload": {"n": n}} for n in range(3)
        ])
        await jobs_repo.claim_jobs(session, 1, user_id)
        # Return the claimed job to the queue, runnable only in an hour.
        await jobs_repo.defer(session, jobs[0].id, NOW + timedelta(hours=1))

    async with get_db() as session:
        claimed = await jobs_repo.claim_jobs(session, 5, user_id)
    assert [job.payload["n"] for job in claimed] == [1, 2]


@pytest.mark.asyncio
async def test_failed_attempts_are_bounded():
    """A job failing every attempt ends in error after max_attempts claims."""
    user_id = uuid.uuid4()
    async with get_db() as session:
        await jobs_repo.enqueue(session, user_id, "embed")

    statuses = []
    for _ in range(3):
        async with get_db() as session:
            (job,) = await jobs_repo.claim_jobs(session, 1, user_id)
            statuses.append(await jobs_repo.mark_failed(session, job, "boom", max_attempts=3))

    assert statuses == ["queued", "queued", "error"]
    async with get_db() as session:
        assert await jobs_repo.claim_jobs(session, 1, user_id) == []
        final = await jobs_repo.get_by_id(session, job.id)
    assert final.attempts == 3
    assert final.last_error == "boom"


@pytest.mark.asyncio
async def test_non_retryable_failure_is_terminal_immediately():
    user_id = uuid.uuid4()
    async with get_db() as session:
        await jobs_repo.enqueue(session, user_id, "provider_sync", {"provider": "gmail"})
        (job,) = await jobs_repo.claim_jobs(session, 1, user_id)
        status = await jobs_repo.mark_failed(session, job, "not connected", max_attempts=5, retryable=False)
    assert status == "error"


@pytest.mark.asyncio
async def test_reverted_job_ignores_late_completion():
    user_id = uuid.uuid4()
    batch_id = uuid.uuid4()
    async with get_db() as session:
        await jobs_repo.enqueue(session, user_id, "normalize", batch_id=batch_id)
        (job,) = await jobs_repo.claim_jobs(session, 1, user_id)
        assert await jobs_repo.revert_batch(session, user_id, batch_id) == 1
        assert await jobs_repo.mark_done(session, job.id, {"normalized": 1}) is False
    async with get_db() as session:
        final = await jobs_repo.get_by_id(session, job.id)
    assert final.status == "reverted"
    assert final.result is None


@pytest.mark.asyncio
async def test_requeue_stuck_counts_an_attempt():
    user_id = uuid.uuid4()
    async with get_db() as session:
        await jobs_repo.enqueue(session, user_id, "normalize")
        (job,) = await jobs_repo.claim_jobs(session, 1, user_id)

    async with get_db() as session:
        recovered = await jobs_repo.requeue_stuck(session, datetime.now(timezone.utc) + timedelta(minutes=1), 5)
        final = await jobs_repo.get_by_id(session, job.id)
    assert recovered >= 1
    assert final.status == "queued"
    assert final.attempts == 1


# ---------------------------------------------------------------------------
# Pipeline end to end
# ---------------------------------------------------------------------------


async def _fake_embed(texts, model=None):
    return [[0.0] * EMBEDDING_DIM for _ in texts]


@pytest.mark.asyncio
async def test_sync_run_and_undo_round_trip():
    """Sync → run stages → completed batch with a linked contact → undo twice."""
    user_id = uuid.uuid4()
    async with get_db() as session:
        contact = await contacts_repo.create(session, user_id, {
            "display_name": "Jane Doe",
            "primary_email": "jane@acme.com",
        })

    connector = ListConnector([
        _event("m-1", sender="Jane Doe <jane@acme.com>"),
        _event("m-2", sender="stranger@nowhere.com"),
    ])
    result = await run_sync(user_id, "gmail", connector=connector)
    assert result.inserted_count == 2

    with patch("stages.embed.embed_texts", new=AsyncMock(side_effect=_fake_embed)):
        run = await run_pending_jobs(10, user_id=user_id, recover_stuck=False)
    assert run.succeeded == 3, run.errors

    status = await get_batch_status(user_id, result.batch_id)
    assert status.status == "completed"
    assert status.summary.events_processed == 2
    assert status.summary.contacts_linked == 1
    assert status.summary.embeddings_created == 2

    async with get_db() as session:
        assert await contacts_repo.find_by_identity(
            session, user_id, "email", "jane@acme.com", "gmail"
        ) == contact.id

    undone = await undo_batch(user_id, result.batch_id)
    assert undone.deleted_events == 2
    assert undone.deleted_interactions == 2
    assert undone.deleted_embeddings == 2
    assert undone.affected_jobs == 3

    again = await undo_batch(user_id, result.batch_id)
    assert again.model_dump() == {
        "deleted_events": 0,
        "deleted_interactions": 0,
        "deleted_embeddings": 0,
        "affected_jobs": 0,
    }
    assert (await get_batch_status(user_id, result.batch_id)).status == "reverted"


@pytest.mark.asyncio
async def test_resync_with_overlap_inserts_nothing_new():
    user_id = uuid.uuid4()
    connector = ListConnector([_event("m-1"), _event("m-2")])
    first = await run_sync(user_id, "gmail", connector=connector)
    second = await run_sync(user_id, "gmail", overlap_hours=24, connector=connector)

    assert first.inserted_count == 2
    assert second.inserted_count == 0
    assert second.skipped_count == 2
    assert second.batch_id != first.batch_id
    # Jobs exist for the empty batch too, so its status resolves.
    assert (await get_batch_status(user_id, second.batch_id)).status == "queued"


@pytest.mark.asyncio
async def test_undo_of_foreign_batch_changes_nothing():
    owner = uuid.uuid4()
    result = await run_sync(owner, "gmail", connector=ListConnector([_event("m-1")]))

    foreign = await undo_batch(uuid.uuid4(), result.batch_id)
    assert foreign.deleted_events == 0
    assert foreign.affected_jobs == 0
    assert (await get_batch_status(owner, result.batch_id)).status == "queued"


@pytest.mark.asyncio
async def test_undo_during_running_normalize_leaves_nothing_behind():
    """A normalize job finishing after its batch was undone enqueues no new stage."""
    user_id = uuid.uuid4()
    result = await run_sync(user_id, "gmail", connector=ListConnector([_event("m-1")]))
    async with get_db() as session:
        (running,) = await jobs_repo.claim_jobs(session, 1, user_id)
    assert running.kind == "normalize"

    first = await undo_batch(user_id, result.batch_id)
    assert first.affected_jobs == 3

    async with get_db() as session:
        await handle_normalize(session, running)
        assert await jobs_repo.ensure_stage_job(
            session, user_id, "extract_contacts", result.batch_id
        ) is None

    second = await undo_batch(user_id, result.batch_id)
    assert second.affected_jobs == 0
    async with get_db() as session:
        jobs = await jobs_repo.get_batch_jobs(session, user_id, result.batch_id)
    assert [(job.kind, job.status) for job in jobs] == [
        ("normalize", "reverted"),
        ("extract_contacts", "reverted"),
        ("embed", "reverted"),
    ]
    assert (await get_batch_status(user_id, result.batch_id)).status == "reverted"


@pytest.mark.asyncio
async def test_recovered_job_runs_only_under_its_new_claim():
    """A runner whose job was recovered as stuck and reclaimed neither runs nor records it."""
    user_id = uuid.uuid4()
    async with get_db() as session:
        await jobs_repo.enqueue(session, user_id, "normalize")
        (stale,) = await jobs_repo.claim_jobs(session, 1, user_id)

    async with get_db() as session:
        await jobs_repo.requeue_stuck(session, datetime.now(timezone.utc) + timedelta(minutes=1), 5)
    async with get_db() as session:
        (fresh,) = await jobs_repo.claim_jobs(session, 1, user_id)
    assert fresh.id == stale.id
    assert fresh.attempts == stale.attempts + 1

    handler = AsyncMock(return_value={})
    outcome = RunJobsResult()
    await process_job(stale, {"normalize": handler}, RetryPolicy(), outcome)
    handler.assert_not_awaited()
    assert outcome.succeeded == 0

    async with get_db() as session:
        assert await jobs_repo.touch(session, stale.id, stale.attempts) is False
        assert await jobs_repo.mark_done(session, stale.id, {"run": "stale"}, attempts=stale.attempts) is False
        assert await jobs_repo.mark_failed(session, stale, "late", max_attempts=5) is None
        assert await jobs_repo.defer(session, stale.id, NOW, attempts=stale.attempts) is False
        assert await jobs_repo.mark_done(session, fresh.id, {"run": "fresh"}, attempts=fresh.attempts) is True
    async with get_db() as session:
        final = await jobs_repo.get_by_id(session, fresh.id)
    assert final.status == "done"
    assert final.result == {"run": "fresh"}


@pytest.mark.asyncio
async def test_heartbeat_keeps_long_job_out_of_stuck_recovery(monkeypatch):
    """A job whose handler outlives the stuck threshold is not recovered by another sweep."""
    monkeypatch.setenv("JOB_STUCK_MINUTES", "0.01")
    user_id = uuid.uuid4()
    async with get_db() as session:
        await jobs_repo.enqueue(session, user_id, "normalize")
    runs = []

    async def slow(session, job):
        runs.append(job.id)
        await asyncio.sleep(1.5)
        return {"normalized": 0, "skipped": 0}

    async def second_sweep():
        await asyncio.sleep(1.0)
        return await run_pending_jobs(5, user_id=user_id, handlers={"normalize": slow})

    first, second = await asyncio.gather(
        run_pending_jobs(5, user_id=user_id, handlers={"normalize": slow}),
        second_sweep(),
    )

    assert len(runs) == 1
    assert first.succeeded == 1
    assert second.processed == 0
