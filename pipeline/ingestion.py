"""Ingestion service: pull provider events into the raw event store.

One run fetches every page the connector yields for the window
[lower_bound, now], stores each page in its own transaction, and then
enqueues the batch's normalize, extract_contacts and embed jobs. Pages
committed before a failure stay stored; stage jobs are enqueued only after
the last page, so a failed run leaves no jobs behind.
"""
import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from db.models import STAGE_KINDS, Job
from db.repositories import jobs as jobs_repo
from db.repositories import raw_events as raw_events_repo
from pipeline.errors import ConnectorError, InvalidJobPayload, SyncTimeoutError
from schemas.sync import SyncFailure, SyncRequest, SyncResult
from tools.connectors import Connector, get_connector

logger = logging.getLogger(__name__)


def default_days_back() -> int:
    return int(os.environ.get("SYNC_DEFAULT_DAYS_BACK", "365"))


def sync_timeout() -> float:
    return float(os.environ.get("SYNC_TIMEOUT_SECONDS", "900"))


def compute_lower_bound(
    latest: Optional[datetime],
    *,
    incremental: bool,
    overlap_hours: int,
    days_back: Optional[int],
    now: datetime,
) -> Optional[datetime]:
    """Earliest occurred_at a run asks the provider for.

    Incremental runs resume from the newest stored event minus the overlap.
    Without a stored event (or on a full run with days_back) the window
    reaches back days_back days, defaulting to SYNC_DEFAULT_DAYS_BACK for
    incremental runs. A full run without days_back is unbounded.
    """
    if incremental and latest is not None:
        return latest - timedelta(hours=overlap_hours)
    if days_back is not None or incremental:
        return now - timedelta(days=days_back or default_days_back())
    return None


async def run_sync(
    user_id: UUID,
    provider: str,
    *,
    incremental: bool = True,
    overlap_hours: int = 0,
    days_back: Optional[int] = None,
    connector: Optional[Connector] = None,
    now: Optional[datetime] = None,
) -> SyncResult:
    """Run one ingestion for (user, provider) and return its batch.

    Raises NotConnectedError or ConnectorError when the provider cannot be
    read; a run exceeding SYNC_TIMEOUT_SECONDS raises SyncTimeoutError.
    """
    request = SyncRequest(
        provider=provider,
        incremental=incremental,
        overlap_hours=overlap_hours,
        days_back=days_back,
    )
    timeout = sync_timeout()
    try:
        return await asyncio.wait_for(
            _run_sync(user_id, request, connector or get_connector(provider), now),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise SyncTimeoutError(f"{provider} sync exceeded {timeout:.0f}s") from exc


async def _run_sync(
    user_id: UUID,
    request: SyncRequest,
    connector: Connector,
    now: Optional[datetime],
) -> SyncResult:
    provider = request.provider
    now = now or datetime.now(timezone.utc)

    latest = None
    if request.incremental:
        async with get_db() as session:
            latest = await raw_events_repo.get_latest_occurred_at(session, user_id, provider)
    lower_bound = compute_lower_bound(
        latest,
        incremental=request.incremental,
        overlap_hours=request.overlap_hours,
        days_back=request.days_back,
        now=now,
    )

    batch_id = uuid.uuid4()
    logger.info(
        "Sync %s for user %s: batch %s, window [%s, %s]",
        provider, user_id, batch_id, lower_bound, now,
    )

    inserted = 0
    skipped = 0
    pages = 0
    cursor: Optional[str] = None
    while True:
        page = await connector.fetch_page(user_id, lower_bound, now, cursor)
        pages += 1
        if page.events:
            async with get_db() as session:
                page_inserted, page_skipped = await raw_events_repo.insert_if_absent(
                    session,
                    user_id,
                    provider,
                    [event.model_dump() for event in page.events],
                    batch_id,
                )
            inserted += page_inserted
            skipped += page_skipped
        if not page.next_cursor or page.next_cursor == cursor:
            break
        cursor = page.next_cursor

    payload = {"batch_id": str(batch_id), "provider": provider}
    async with get_db() as session:
        await jobs_repo.enqueue_many(session, [
            {"user_id": user_id, "kind": kind, "payload": payload, "batch_id": batch_id}
            for kind in STAGE_KINDS
        ])

    logger.info(
        "Sync %s for user %s done: %d inserted, %d skipped over %d pages",
        provider, user_id, inserted, skipped, pages,
    )
    return SyncResult(
        batch_id=batch_id,
        inserted_count=inserted,
        skipped_count=skipped,
        lower_bound=lower_bound,
        pages=pages,
    )


async def trigger_sync(
    user_id: UUID,
    request: SyncRequest,
    connector: Optional[Connector] = None,
) -> Union[SyncResult, SyncFailure]:
    """Run a sync and report provider failures as a SyncFailure."""
    try:
        return await run_sync(
            user_id,
            request.provider,
            incremental=request.incremental,
            overlap_hours=request.overlap_hours,
            days_back=request.days_back,
            connector=connector,
        )
    except ConnectorError as exc:
        logger.warning("Sync %s for user %s failed (%s): %s", request.provider, user_id, exc.code, exc)
        return SyncFailure(error=exc.code, message=str(exc))


async def run_provider_sync(session: AsyncSession, job: Job) -> dict:
    """provider_sync job handler.

    payload dict keys: provider, incremental, overlap_hours, days_back
    """
    try:
        request = SyncRequest(**(job.payload or {}))
    except ValidationError as exc:
        raise InvalidJobPayload(f"Invalid provider_sync payload: {exc}") from exc

    result = await run_sync(
        job.user_id,
        request.provider,
        incremental=request.incremental,
        overlap_hours=request.overlap_hours,
        days_back=request.days_back,
    )
    return {
        "batch_id": str(result.batch_id),
        "inserted": result.inserted_count,
        "skipped": result.skipped_count,
        "pages": result.pages,
    }
