"""
Similarity index implementations and embedding providers.
"""

from .index import ISimilarityIndex, BruteForceIndex, normalize_vector
from .faiss_store import FaissVectorStore
from .types import SearchHit, IndexState
from .embeddings import (
    IEmbeddingProvider,
    DeterministicHashEmbedding,
    SentenceTransformerEmbedding,
    OllamaEmbedding,
    RetryPolicy,
    embed_with_retry,
)

__all__ = [
    'ISimilarityIndex',
    'BruteForceIndex',
    'FaissVectorStore',
    'normalize_vector',
    'SearchHit',
    'IndexState',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'OllamaEmbedding',
    'RetryPolicy',
    'embed_with_retry',
]
