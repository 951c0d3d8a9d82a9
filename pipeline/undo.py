"""Undo service: remove everything a batch produced, in one transaction.

Deletes the batch's embeddings, interactions and raw events and marks its
jobs reverted. Identities recorded by contact extraction are kept.
Repeating an undo, or undoing a batch the user does not own, changes
nothing and returns zeros.
"""
import logging
from uuid import UUID

from db import get_db
from db.repositories import embeddings as embeddings_repo
from db.repositories import interactions as interactions_repo
from db.repositories import jobs as jobs_repo
from db.repositories import raw_events as raw_events_repo
from schemas.jobs import UndoResult

logger = logging.getLogger(__name__)


async def undo_batch(user_id: UUID, batch_id: UUID) -> UndoResult:
    async with get_db() as session:
        deleted_embeddings = await embeddings_repo.delete_by_batch(session, user_id, batch_id)
        deleted_interactions = await interactions_repo.delete_by_batch(session, user_id, batch_id)
        deleted_events = await raw_events_repo.delete_by_batch(session, user_id, batch_id)
        affected_jobs = await jobs_repo.revert_batch(session, user_id, batch_id)

    result = UndoResult(
        deleted_events=deleted_events,
        deleted_interactions=deleted_interactions,
        deleted_embeddings=deleted_embeddings,
        affected_jobs=affected_jobs,
    )
    logger.info("Undid batch %s for user %s: %s", batch_id, user_id, result.model_dump())
    return result
