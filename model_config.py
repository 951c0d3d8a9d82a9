"""Embedding model selection.

Priority:
  1. EMBEDDING_MODEL set → use it verbatim (any litellm model string)
  2. OPENAI_API_KEY set → OpenAI embeddings through litellm
  3. Otherwise → Vertex AI embeddings (requires GOOGLE_CLOUD_PROJECT + service account)

Usage:
    from model_config import get_embedding_model
    model = get_embedding_model()
"""
import os

# Model identifiers
OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
VERTEX_EMBEDDING_MODEL = "vertex_ai/text-embedding-005"


def get_embedding_model() -> str:
    """Return the litellm model string for the active provider."""
    override = os.environ.get("EMBEDDING_MODEL")
    if override:
        return override
    if os.environ.get("OPENAI_API_KEY"):
        return OPENAI_EMBEDDING_MODEL
    return VERTEX_EMBEDDING_MODEL


def active_provider() -> str:
    """Return 'openai' or 'vertex_ai' depending on which is active."""
    return "openai" if os.environ.get("OPENAI_API_KEY") else "vertex_ai"
