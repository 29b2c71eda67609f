"""Embedding and vector index clients."""

from .service import EmbeddingClient, EmbeddingConfig, HashEmbeddings, build_embedding_provider
from .store import ChromaVectorIndex, VectorIndex

__all__ = [
    "ChromaVectorIndex",
    "EmbeddingClient",
    "EmbeddingConfig",
    "HashEmbeddings",
    "VectorIndex",
    "build_embedding_provider",
]
