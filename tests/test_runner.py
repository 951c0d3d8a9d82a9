"""Unit tests for the job runner."""
import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from db.models import Job
from pipeline.errors import NotConnectedError, StageNotReady, UpstreamStageError
from pipeline.runner import check_stage_ready, process_job, run_pending_jobs
from schemas.jobs import RunJobsResult
from tools.retry import RetryPolicy

RUNNER_MODULE = "pipeline.runner"
POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=0)


def _job(kind="normalize", attempts=0, seq=1, batch_id=None) -> Job:
    return Job(
        id=uuid.uuid4(),
        seq=seq,
        user_id=uuid.uuid4(),
        kind=kind,
        payload={},
        batch_id=batch_id,
        status="processing",
        attempts=attempts,
    )


@pytest.fixture
def repo(fake_db):
    """Patch get_db and the job repository calls the runner makes."""
    session, get_db = fake_db
    with patch(f"{RUNNER_MODULE}.get_db", get_db), \
            patch(f"{RUNNER_MODULE}.jobs_repo.mark_done", new_callable=AsyncMock, return_value=True) as mark_done, \
            patch(f"{RUNNER_MODULE}.jobs_repo.mark_failed", new_callable=AsyncMock, return_value="queued") as mark_failed, \
            patch(f"{RUNNER_MODULE}.jobs_repo.defer", new_callable=AsyncMock, return_value=True) as defer, \
            patch(f"{RUNNER_MODULE}.jobs_repo.get_stage_statuses", new_callable=AsyncMock, return_value=set()) as statuses, \
            patch(f"{RUNNER_MODULE}.jobs_repo.claim_jobs", new_callable=AsyncMock, return_value=[]) as claim, \
            patch(f"{RUNNER_MODULE}.jobs_repo.touch", new_callable=AsyncMock, return_value=True) as touch, \
            patch(f"{RUNNER_MODULE}.jobs_repo.requeue_stuck", new_callable=AsyncMock, return_value=0) as requeue:
        yield {
            "session": session,
            "mark_done": mark_done,
            "mark_failed": mark_failed,
            "defer": defer,
            "statuses": statuses,
            "claim": claim,
            "requeue": requeue,
            "touch": touch,
        }


class TestCheckStageReady:
    def test_first_stage_is_always_ready(self):
        check_stage_ready("normalize", {"queued"})

    def test_missing_predecessor_job_is_ready(self):
        check_stage_ready("embed", set())

    def test_done_predecessor_is_ready(self):
        check_stage_ready("extract_contacts", {"done"})
        check_stage_ready("extract_contacts", {"done", "error"})

    @pytest.mark.parametrize("statuses", [{"queued"}, {"processing"}, {"done", "queued"}])
    def test_unfinished_predecessor_defers(self, statuses):
        with pytest.raises(StageNotReady):
            check_stage_ready("embed", statuses)

    @pytest.mark.parametrize("statuses", [{"error"}, {"reverted"}, {"error", "reverted"}])
    def test_failed_predecessor_is_terminal(self, statuses):
        with pytest.raises(UpstreamStageError) as excinfo:
            check_stage_ready("extract_contacts", statuses)
        assert excinfo.value.retryable is False


class TestProcessJob:
    @pytest.mark.asyncio
    async def test_success_records_result(self, repo):
        job = _job()
        handler = AsyncMock(return_value={"normalized": 4, "skipped": 0})
        result = RunJobsResult()

        await process_job(job, {"normalize": handler}, POLICY, result)

        handler.assert_awaited_once_with(repo["session"], job)
        repo["mark_done"].assert_awaited_once_with(
            repo["session"], job.id, {"normalized": 4, "skipped": 0}, attempts=0
        )
        repo["touch"].assert_awaited_once_with(repo["session"], job.id, 0)
        assert result.succeeded == 1
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_retryable_failure_requeues_with_backoff(self, repo):
        job = _job(attempts=1)
        handler = AsyncMock(side_effect=RuntimeError("db hiccup"))
        result = RunJobsResult()

        await process_job(job, {"normalize": handler}, POLICY, result)

        repo["mark_done"].assert_not_awaited()
        call = repo["mark_failed"].await_args
        assert call.args[1] is job
        assert "db hiccup" in call.args[2]
        assert call.kwargs["max_attempts"] == 3
        assert call.kwargs["retryable"] is True
        assert call.kwargs["retry_at"] is not None
        assert result.failed == 1
        assert "db hiccup" in result.errors[0]

    @pytest.mark.asyncio
    async def test_not_connected_is_not_retried(self, repo):
        job = _job(kind="provider_sync")
        handler = AsyncMock(side_effect=NotConnectedError("revoked"))
        repo["mark_failed"].return_value = "error"

        await process_job(job, {"provider_sync": handler}, POLICY, RunJobsResult())

        assert repo["mark_failed"].await_args.kwargs["retryable"] is False

    @pytest.mark.asyncio
    async def test_unknown_kind_is_terminal(self, repo):
        job = _job(kind="mystery")
        result = RunJobsResult()

        await process_job(job, {}, POLICY, result)

        assert repo["mark_failed"].await_args.kwargs["retryable"] is False
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_waiting_on_predecessor_defers_without_running(self, repo):
        job = _job(kind="extract_contacts", batch_id=uuid.uuid4())
        repo["statuses"].return_value = {"processing"}
        handler = AsyncMock()
        result = RunJobsResult()

        await process_job(job, {"extract_contacts": handler}, POLICY, result)

        handler.assert_not_awaited()
        repo["statuses"].assert_awaited_once_with(repo["session"], job.user_id, job.batch_id, "normalize")
        repo["defer"].assert_awaited_once()
        repo["mark_failed"].assert_not_awaited()
        assert result.deferred == 1
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_failed_predecessor_fails_job(self, repo):
        job = _job(kind="embed", batch_id=uuid.uuid4())
        repo["statuses"].return_value = {"error"}
        handler = AsyncMock()

        await process_job(job, {"embed": handler}, POLICY, RunJobsResult())

        handler.assert_not_awaited()
        assert repo["mark_failed"].await_args.kwargs["retryable"] is False

    @pytest.mark.asyncio
    async def test_handler_timeout_counts_as_failed_attempt(self, repo, monkeypatch):
        monkeypatch.setenv("JOB_TIMEOUT_SECONDS", "0.05")

        async def slow(session, job):
            await asyncio.sleep(5)

        await process_job(_job(), {"normalize": slow}, POLICY, RunJobsResult())

        call = repo["mark_failed"].await_args
        assert "Timed out" in call.args[2]
        assert call.kwargs["retryable"] is True

    @pytest.mark.asyncio
    async def test_job_reclaimed_elsewhere_is_skipped(self, repo):
        job = _job(attempts=1)
        repo["touch"].return_value = False
        handler = AsyncMock()
        result = RunJobsResult()

        await process_job(job, {"normalize": handler}, POLICY, result)

        handler.assert_not_awaited()
        repo["mark_done"].assert_not_awaited()
        repo["mark_failed"].assert_not_awaited()
        assert result.succeeded == 0
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_long_handler_keeps_claim_fresh(self, repo, monkeypatch):
        monkeypatch.setenv("JOB_STUCK_MINUTES", "0.0005")

        async def slow(session, job):
            await asyncio.sleep(0.15)
            return {}

        await process_job(_job(), {"normalize": slow}, POLICY, RunJobsResult())

        assert repo["touch"].await_count >= 3
        repo["mark_done"].assert_awaited_once()


class TestRunPendingJobs:
    @pytest.mark.asyncio
    async def test_runs_claimed_jobs_in_order(self, repo):
        jobs = [_job(seq=1), _job(seq=2), _job(seq=3)]
        repo["claim"].return_value = jobs
        seen = []

        async def handler(session, job):
            seen.append(job.seq)
            return {"normalized": 0, "skipped": 0}

        result = await run_pending_jobs(10, handlers={"normalize": handler}, retry_policy=POLICY)

        assert seen == [1, 2, 3]
        assert result.processed == 3
        assert result.succeeded == 3
        repo["requeue"].assert_awaited_once()
        assert repo["claim"].await_args.args[1:] == (10, None)

    @pytest.mark.asyncio
    async def test_concurrent_mode_runs_every_job(self, repo):
        repo["claim"].return_value = [_job(seq=n) for n in range(5)]
        handler = AsyncMock(return_value={})

        result = await run_pending_jobs(
            5, handlers={"normalize": handler}, retry_policy=POLICY, concurrency=3, recover_stuck=False
        )

        assert handler.await_count == 5
        assert result.succeeded == 5
        repo["requeue"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_queue(self, repo):
        result = await run_pending_jobs(handlers={}, retry_policy=POLICY)
        assert result.model_dump() == {
            "processed": 0, "succeeded": 0, "failed": 0, "deferred": 0, "errors": [],
        }

    @pytest.mark.asyncio
    async def test_rejects_out_of_range_limit(self, repo):
        with pytest.raises(ValueError):
            await run_pending_jobs(0, handlers={})

    @pytest.mark.asyncio
    async def test_recording_failure_does_not_stop_the_sweep(self, repo):
        repo["claim"].return_value = [_job(seq=1), _job(seq=2)]
        repo["mark_failed"].side_effect = asyncio.TimeoutError()
        handler = AsyncMock(side_effect=RuntimeError("boom"))

        result = await run_pending_jobs(
            10, handlers={"normalize": handler}, retry_policy=POLICY, recover_stuck=False
        )

        assert handler.await_count == 2
        assert result.failed == 2
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_recording_failure_in_concurrent_mode_keeps_result(self, repo):
        repo["claim"].return_value = [_job(seq=n) for n in range(3)]
        repo["mark_done"].side_effect = [True, ConnectionError("dropped"), True]
        handler = AsyncMock(return_value={})

        result = await run_pending_jobs(
            3, handlers={"normalize": handler}, retry_policy=POLICY, concurrency=3, recover_stuck=False
        )

        assert result.processed == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert "ConnectionError" in result.errors[0]
