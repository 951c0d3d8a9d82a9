"""Run one sweep of the job queue. Meant for cron or a platform scheduler:

    */1 * * * * cd /srv/pipeline && python scripts/run_pending_jobs.py

JOB_SWEEP_LIMIT (default 50) caps the jobs claimed per sweep and
JOB_SWEEP_CONCURRENCY (default 1) how many run at once. Exits non-zero
when any job failed in this sweep.
"""
import asyncio
import logging
import os
import sys
from pathlib import Path

# Resolve project root so imports work when run from any cwd
_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from dotenv import load_dotenv

load_dotenv()

from db.connection import dispose_engine
from pipeline.runner import run_pending_jobs

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def main() -> int:
    limit = int(os.environ.get("JOB_SWEEP_LIMIT", "50"))
    concurrency = int(os.environ.get("JOB_SWEEP_CONCURRENCY", "1"))
    try:
        result = await run_pending_jobs(limit, concurrency=concurrency)
    finally:
        await dispose_engine()

    logger.info(
        "Sweep done: %d processed, %d succeeded, %d failed, %d deferred",
        result.processed, result.succeeded, result.failed, result.deferred,
    )
    for error in result.errors:
        logger.warning("  %s", error)
    return 1 if result.failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
