"""Provider ingestion pipeline command-line entry point.

Usage:
  # Pull Gmail messages since the last sync (1 hour overlap)
  python worker.py sync --user-id <uuid> --provider gmail --overlap-hours 1

  # Full calendar sync of the last 90 days
  python worker.py sync --user-id <uuid> --provider calendar --full --days-back 90

  # Run queued jobs once, or keep polling every 10 seconds
  python worker.py run-jobs --limit 50
  python worker.py run-jobs --loop --interval 10

  # Inspect or roll back a batch
  python worker.py status --user-id <uuid> --batch-id <uuid>
  python worker.py undo --user-id <uuid> --batch-id <uuid>

  # Queue maintenance
  python worker.py requeue-stuck --minutes 10
  python worker.py stats
"""
import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from db import dispose_engine, get_db
from db.repositories import jobs as jobs_repo
from pipeline.batch_status import get_batch_status
from pipeline.ingestion import trigger_sync
from pipeline.runner import recover_stuck_jobs, run_pending_jobs
from pipeline.undo import undo_batch
from schemas.sync import SyncFailure, SyncRequest

logger = logging.getLogger(__name__)


def _print(model) -> None:
    print(model.model_dump_json(indent=2))


async def cmd_sync(user_id: uuid.UUID, request: SyncRequest) -> int:
    result = await trigger_sync(user_id, request)
    _print(result)
    return 1 if isinstance(result, SyncFailure) else 0


async def cmd_run_jobs(
    limit: int,
    user_id: Optional[uuid.UUID],
    concurrency: int,
    loop: bool,
    interval: float,
) -> int:
    while True:
        result = await run_pending_jobs(limit, user_id=user_id, concurrency=concurrency)
        _print(result)
        if not loop:
            return 0
        if result.processed == 0:
            await asyncio.sleep(interval)


async def cmd_status(user_id: uuid.UUID, batch_id: uuid.UUID) -> int:
    status = await get_batch_status(user_id, batch_id)
    _print(status)
    return 1 if status.status == "not_found" else 0


async def cmd_undo(user_id: uuid.UUID, batch_id: uuid.UUID) -> int:
    _print(await undo_batch(user_id, batch_id))
    return 0


async def cmd_requeue_stuck(minutes: Optional[float]) -> int:
    count = await recover_stuck_jobs(minutes)
    print(json.dumps({"recovered": count}))
    return 0


async def cmd_stats(user_id: Optional[uuid.UUID]) -> int:
    async with get_db() as session:
        counts = await jobs_repo.get_job_counts(session, user_id)
    print(json.dumps(counts, indent=2, sort_keys=True))
    return 0


async def _run(coro) -> int:
    try:
        return await coro
    finally:
        await dispose_engine()


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Provider ingestion and job pipeline"
    )
    sub = parser.add_subparsers(dest="command")

    sync = sub.add_parser("sync", help="Ingest provider events and enqueue stage jobs")
    sync.add_argument("--user-id", required=True, type=uuid.UUID)
    sync.add_argument("--provider", required=True, choices=["gmail", "calendar"])
    sync.add_argument("--full", action="store_true", help="Ignore previously stored events")
    sync.add_argument("--overlap-hours", type=int, default=0, help="Re-fetch window before the last event (0-72)")
    sync.add_argument("--days-back", type=int, default=None, help="Lookback when there is no prior event (1-365)")

    run_jobs = sub.add_parser("run-jobs", help="Claim and run queued jobs")
    run_jobs.add_argument("--limit", type=int, default=50)
    run_jobs.add_argument("--user-id", type=uuid.UUID, default=None, help="Only run this user's jobs")
    run_jobs.add_argument("--concurrency", type=int, default=1)
    run_jobs.add_argument("--loop", action="store_true", help="Keep polling for new jobs")
    run_jobs.add_argument("--interval", type=float, default=10.0, help="Seconds between idle polls")

    status = sub.add_parser(
        "status",
        help="Show the status of a batch (not_found, failed, processing, queued, completed or reverted)",
    )
    status.add_argument("--user-id", required=True, type=uuid.UUID)
    status.add_argument("--batch-id", required=True, type=uuid.UUID)

    undo = sub.add_parser("undo", help="Delete a batch's data and revert its jobs")
    undo.add_argument("--user-id", required=True, type=uuid.UUID)
    undo.add_argument("--batch-id", required=True, type=uuid.UUID)

    requeue = sub.add_parser("requeue-stuck", help="Recover jobs stuck in processing")
    requeue.add_argument("--minutes", type=float, default=None, help="Processing age threshold (default JOB_STUCK_MINUTES)")

    stats = sub.add_parser("stats", help="Job counts by kind and status")
    stats.add_argument("--user-id", type=uuid.UUID, default=None)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    if args.command == "sync":
        request = SyncRequest(
            provider=args.provider,
            incremental=not args.full,
            overlap_hours=args.overlap_hours,
            days_back=args.days_back,
        )
        return asyncio.run(_run(cmd_sync(args.user_id, request)))

    elif args.command == "run-jobs":
        return asyncio.run(_run(cmd_run_jobs(
            limit=args.limit,
            user_id=args.user_id,
            concurrency=args.concurrency,
            loop=args.loop,
            interval=args.interval,
        )))

    elif args.command == "status":
        return asyncio.run(_run(cmd_status(args.user_id, args.batch_id)))

    elif args.command == "undo":
        return asyncio.run(_run(cmd_undo(args.user_id, args.batch_id)))

    elif args.command == "requeue-stuck":
        return asyncio.run(_run(cmd_requeue_stuck(args.minutes)))

    elif args.command == "stats":
        return asyncio.run(_run(cmd_stats(args.user_id)))

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
