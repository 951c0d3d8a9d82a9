"""Job handlers by kind.

Each handler is `async (session, job) -> dict`; the returned dict is stored
as the job's result.
"""
from pipeline.ingestion import run_provider_sync
from .embed import handle_embed
from .extract_contacts import handle_extract_contacts
from .normalize import handle_normalize

HANDLERS = {
    "normalize": handle_normalize,
    "extract_contacts": handle_extract_contacts,
    "embed": handle_embed,
    "provider_sync": run_provider_sync,
}

# Stage that must be done for a batch before the keyed stage may run.
PREDECESSORS = {
    "extract_contacts": "normalize",
    "embed": "extract_contacts",
}

__all__ = [
    "HANDLERS", "PREDECESSORS",
    "handle_normalize", "handle_extract_contacts", "handle_embed", "run_provider_sync",
]
