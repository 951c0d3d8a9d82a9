from .retry import RetryPolicy
from .connectors import Connector, get_connector, load_credentials
from .embedding_tools import embed_texts

__all__ = [
    "RetryPolicy",
    "Connector", "get_connector", "load_credentials",
    "embed_texts",
]
