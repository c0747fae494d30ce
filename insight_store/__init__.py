"""
Insight Store: vector-indexed knowledge store with filtered semantic retrieval.
"""

from .core.config import VERSION as __version__
from .core.errors import (
    KnowledgeStoreError,
    ValidationError,
    DimensionMismatchError,
    ProviderError,
    RateLimited,
    ProviderUnavailable,
    InvalidInput,
    ConsistencyError,
    CorruptSnapshot,
    StorageError,
    SnapshotNotFound,
)
from .core.schema import Document, MetadataRecord, EnrichedResult, StoreStats, IngestOutcome
from .core.knowledge_store import KnowledgeStore
from .core.query_engine import QueryEngine

__all__ = [
    '__version__',
    'KnowledgeStore',
    'QueryEngine',
    'Document',
    'MetadataRecord',
    'EnrichedResult',
    'StoreStats',
    'IngestOutcome',
    'KnowledgeStoreError',
    'ValidationError',
    'DimensionMismatchError',
    'ProviderError',
    'RateLimited',
    'ProviderUnavailable',
    'InvalidInput',
    'ConsistencyError',
    'CorruptSnapshot',
    'StorageError',
    'SnapshotNotFound',
]
