"""Interaction repository — derived rows produced by the normalize stage."""
import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Embedding, Interaction

logger = logging.getLogger(__name__)


async def insert_if_absent(session: AsyncSession, rows: list[dict[str, Any]]) -> int:
    """Insert interactions, skipping raw events that already have one.

    Dedup key: raw_event_id. Returns the number of rows inserted.

    row dict keys: user_id, raw_event_id, type, subject, body_text, body_raw,
    occurred_at, source, source_id, source_meta, batch_id
    """
    if not rows:
        return 0
    stmt = (
        pg_insert(Interaction)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["raw_event_id"])
        .returning(Interaction.id)
    )
    result = await session.execute(stmt)
    await session.flush()
    return len(result.fetchall())


async def get_unlinked(
    session: AsyncSession,
    user_id: UUID,
    batch_id: Optional[UUID] = None,
    limit: Optional[int] = 500,
) -> list[Interaction]:
    """Return interactions with no contact yet, oldest first."""
    stmt = (
        select(Interaction)
        .where(Interaction.user_id == user_id)
        .where(Interaction.contact_id.is_(None))
        .order_by(Interaction.occurred_at)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    if batch_id is not None:
        stmt = stmt.where(Interaction.batch_id == batch_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_unembedded(
    session: AsyncSession,
    user_id: UUID,
    batch_id: Optional[UUID] = None,
    limit: Optional[int] = 500,
) -> list[Interaction]:
    """Return interactions that have no embedding row yet."""
    has_embedding = (
        select(Embedding.id)
        .where(Embedding.owner_type == "interaction")
        .where(Embedding.owner_id == Interaction.id)
        .exists()
    )
    stmt = (
        select(Interaction)
        .where(Interaction.user_id == user_id)
        .where(~has_embedding)
        .order_by(Interaction.occurred_at)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    if batch_id is not None:
        stmt = stmt.where(Interaction.batch_id == batch_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def link_contact(
    session: AsyncSession, interaction_id: UUID, contact_id: UUID
) -> bool:
    """Set contact_id on an interaction that is still unlinked.

    Returns False when another run linked it first.
    """
    result = await session.execute(
        update(Interaction)
        .where(Interaction.id == interaction_id)
        .where(Interaction.contact_id.is_(None))
        .values(contact_id=contact_id)
        .returning(Interaction.id)
    )
    await session.flush()
    return result.scalar_one_or_none() is not None


async def delete_by_batch(session: AsyncSession, user_id: UUID, batch_id: UUID) -> int:
    """Delete the interactions derived from a batch."""
    result = await session.execute(
        delete(Interaction)
        .where(Interaction.user_id == user_id)
        .where(Interaction.batch_id == batch_id)
        .returning(Interaction.id)
    )
    await session.flush()
    return len(result.fetchall())
