"""Embedding repository."""
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Embedding

logger = logging.getLogger(__name__)


async def insert_if_absent(session: AsyncSession, rows: list[dict[str, Any]]) -> int:
    """Store embeddings, skipping owners that already have one.

    row dict keys: user_id, owner_type, owner_id, embedding, meta, batch_id
    """
    if not rows:
        return 0
    stmt = (
        pg_insert(Embedding)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["owner_type", "owner_id"])
        .returning(Embedding.id)
    )
    result = await session.execute(stmt)
    await session.flush()
    return len(result.fetchall())


async def delete_by_batch(session: AsyncSession, user_id: UUID, batch_id: UUID) -> int:
    result = await session.execute(
        delete(Embedding)
        .where(Embedding.user_id == user_id)
        .where(Embedding.batch_id == batch_id)
        .returning(Embedding.id)
    )
    await session.flush()
    return len(result.fetchall())
