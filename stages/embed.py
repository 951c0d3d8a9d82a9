"""embed stage: one vector per interaction of the batch."""
import logging
import os
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Interaction, Job
from db.repositories import embeddings as embeddings_repo
from db.repositories import interactions as interactions_repo
from model_config import get_embedding_model
from tools.embedding_tools import embed_texts

logger = logging.getLogger(__name__)


def batch_size() -> int:
    return max(int(os.environ.get("EMBED_BATCH_SIZE", "32")), 1)


def embedding_text(interaction: Interaction) -> Optional[str]:
    """Text embedded for an interaction: subject and body, blank-line separated."""
    parts = [p.strip() for p in (interaction.subject, interaction.body_text) if p and p.strip()]
    if not parts:
        return None
    return "\n\n".join(parts)


async def handle_embed(session: AsyncSession, job: Job) -> dict:
    interactions = await interactions_repo.get_unembedded(
        session, job.user_id, job.batch_id, limit=None
    )
    pending: List[tuple] = []
    skipped = 0
    for interaction in interactions:
        text = embedding_text(interaction)
        if text is None:
            skipped += 1
        else:
            pending.append((interaction, text))

    model = get_embedding_model()
    size = batch_size()
    embedded = 0
    for start in range(0, len(pending), size):
        chunk = pending[start:start + size]
        vectors = await embed_texts([text for _, text in chunk], model=model)
        rows = [
            {
                "user_id": interaction.user_id,
                "owner_type": "interaction",
                "owner_id": interaction.id,
                "embedding": vector,
                "meta": {"model": model},
                "batch_id": interaction.batch_id,
            }
            for (interaction, _), vector in zip(chunk, vectors)
        ]
        inserted = await embeddings_repo.insert_if_absent(session, rows)
        embedded += inserted
        skipped += len(rows) - inserted

    logger.info("embed job %s: %d embeddings created, %d skipped", job.id, embedded, skipped)
    return {"embedded": embedded, "skipped": skipped}
