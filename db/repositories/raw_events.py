"""Raw event repository — idempotent ingestion and batch-scoped reads."""
import logging
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Interaction, RawEvent

logger = logging.getLogger(__name__)


async def insert_if_absent(
    session: AsyncSession,
    user_id: UUID,
    provider: str,
    events: Iterable[dict[str, Any]],
    batch_id: Optional[UUID] = None,
) -> tuple[int, int]:
    """Insert provider events, skipping any already stored.

    Dedup key: (user_id, provider, source_id). Rows that already exist are
    left untouched, so their batch_id keeps pointing at the run that first
    ingested them. Events without a source_id are always inserted.

    event dict keys: source_id, occurred_at, payload, source_meta

    Returns (inserted, skipped).
    """
    rows = []
    seen: set[str] = set()
    received = 0
    for event in events:
        received += 1
        source_id = event.get("source_id")
        if source_id is not None:
            if source_id in seen:
                continue
            seen.add(source_id)
        rows.append({
            "user_id": user_id,
            "provider": provider,
            "payload": event["payload"],
            "occurred_at": event["occurred_at"],
            "source_id": source_id,
            "source_meta": event.get("source_meta"),
            "batch_id": batch_id,
        })

    if not rows:
        return 0, received

    stmt = (
        pg_insert(RawEvent)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["user_id", "provider", "source_id"])
        .returning(RawEvent.id)
    )
    result = await session.execute(stmt)
    await session.flush()
    inserted = len(result.fetchall())
    return inserted, received - inserted


async def get_latest_occurred_at(
    session: AsyncSession, user_id: UUID, provider: str
) -> Optional[datetime]:
    """Return the occurred_at of the newest raw event for (user, provider)."""
    result = await session.execute(
        select(func.max(RawEvent.occurred_at))
        .where(RawEvent.user_id == user_id)
        .where(RawEvent.provider == provider)
    )
    return result.scalar_one_or_none()


async def get_unnormalized(
    session: AsyncSession,
    user_id: UUID,
    batch_id: Optional[UUID] = None,
    limit: int = 500,
) -> list[RawEvent]:
    """Return raw events that have no interaction yet, oldest first.

    Scoped to a batch when batch_id is given, otherwise to the whole user.
    """
    has_interaction = (
        select(Interaction.id)
        .where(Interaction.raw_event_id == RawEvent.id)
        .exists()
    )
    stmt = (
        select(RawEvent)
        .where(RawEvent.user_id == user_id)
        .where(~has_interaction)
        .order_by(RawEvent.occurred_at)
        .limit(limit)
    )
    if batch_id is not None:
        stmt = stmt.where(RawEvent.batch_id == batch_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def link_contact(
    session: AsyncSession, raw_event_id: UUID, contact_id: UUID
) -> bool:
    """Attach a resolved contact to a raw event that has none yet."""
    result = await session.execute(
        update(RawEvent)
        .where(RawEvent.id == raw_event_id)
        .where(RawEvent.contact_id.is_(None))
        .values(contact_id=contact_id)
        .returning(RawEvent.id)
    )
    await session.flush()
    return result.scalar_one_or_none() is not None


async def count_by_batch(session: AsyncSession, user_id: UUID, batch_id: UUID) -> int:
    """Return how many raw events a batch produced."""
    result = await session.execute(
        select(func.count(RawEvent.id))
        .where(RawEvent.user_id == user_id)
        .where(RawEvent.batch_id == batch_id)
    )
    return int(result.scalar_one())


async def delete_by_batch(session: AsyncSession, user_id: UUID, batch_id: UUID) -> int:
    """Delete the raw events a batch inserted. Returns the deleted count."""
    result = await session.execute(
        delete(RawEvent)
        .where(RawEvent.user_id == user_id)
        .where(RawEvent.batch_id == batch_id)
        .returning(RawEvent.id)
    )
    await session.flush()
    return len(result.fetchall())
