"""Text embedding through litellm."""
import logging
import os
from typing import List, Optional

import litellm

from db.models import EMBEDDING_DIM
from model_config import get_embedding_model
from vertex_ai_init import init_vertex_ai

logger = logging.getLogger(__name__)


def _field(item, name: str):
    return item[name] if isinstance(item, dict) else getattr(item, name)


def max_input_chars() -> int:
    return int(os.environ.get("EMBED_MAX_CHARS", "8000"))


async def embed_texts(texts: List[str], model: Optional[str] = None) -> List[List[float]]:
    """Embed texts in one provider call, preserving input order.

    Args:
        texts: Input strings; each is truncated to EMBED_MAX_CHARS.
        model: litellm model string (defaults to get_embedding_model()).

    Returns:
        One vector of EMBEDDING_DIM floats per input text.
    """
    if not texts:
        return []
    init_vertex_ai()
    model = model or get_embedding_model()
    limit = max_input_chars()
    response = await litellm.aembedding(
        model=model,
        input=[t[:limit] for t in texts],
        dimensions=EMBEDDING_DIM,
    )
    data = sorted(response.data, key=lambda item: _field(item, "index"))
    vectors = [list(_field(item, "embedding")) for item in data]
    if len(vectors) != len(texts):
        raise ValueError(f"Embedding provider returned {len(vectors)} vectors for {len(texts)} inputs")
    logger.info("Embedded %d texts with %s", len(texts), model)
    return vectors
