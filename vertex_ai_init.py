"""Initialize the embedding backend from environment variables.

Provider selection:
  - OPENAI_API_KEY set → OpenAI API (no Vertex AI init needed)
  - Otherwise → Vertex AI (requires GOOGLE_CLOUD_PROJECT + service account)

Call init_vertex_ai() once at process start, before the embed stage runs.
"""
import logging
import os

import litellm
import vertexai

from model_config import active_provider

logger = logging.getLogger(__name__)

_initialized = False


def init_vertex_ai() -> None:
    """Initialize the active embedding provider. Safe to call repeatedly."""
    global _initialized
    if _initialized:
        return

    if active_provider() == "openai":
        logger.info("Embedding provider: OpenAI API (OPENAI_API_KEY is set)")
    else:
        project = os.environ.get("GOOGLE_CLOUD_PROJECT")
        if not project:
            logger.warning("GOOGLE_CLOUD_PROJECT is not set; Vertex AI embeddings will fail")
        else:
            location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
            vertexai.init(project=project, location=location)
            logger.info("Embedding provider: Vertex AI (project=%s, location=%s)", project, location)

    if os.environ.get("LANGFUSE_PUBLIC_KEY"):
        litellm.success_callback = ["langfuse"]
        litellm.failure_callback = ["langfuse"]

    _initialized = True
