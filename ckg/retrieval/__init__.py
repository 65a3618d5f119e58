"""
Retrieval layer: symbolic lookups and embedding-based semantic search.
"""

from .embedding import EmbeddingService
from .providers import LocalFeatureProvider, OpenAIEmbeddingProvider, create_provider
from .symbolic_index import SymbolicIndex

__all__ = [
    "EmbeddingService",
    "LocalFeatureProvider",
    "OpenAIEmbeddingProvider",
    "SymbolicIndex",
    "create_provider",
]
