"""
Error taxonomy for the knowledge store.
Validation, provider, consistency and storage failures each have their own branch.
"""

from typing import Optional


class KnowledgeStoreError(Exception):
    """Base class for all knowledge store errors."""
    pass


class ValidationError(KnowledgeStoreError):
    """Malformed document, bad query input or wrong embedding dimension. Never retried."""
    pass


class DimensionMismatchError(ValidationError):
    """Vector length differs from the dimension fixed at store initialization."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension {actual} does not match expected dimension {expected}")


class ProviderError(KnowledgeStoreError):
    """Embedding provider call failed."""

    retryable = False


class RateLimited(ProviderError):
    """Provider asked us to slow down."""

    retryable = True

    def __init__(self, message: str = "Embedding provider rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailable(ProviderError):
    """Provider could not be reached or returned a server error."""

    retryable = True


class InvalidInput(ProviderError):
    """Provider rejected the text itself. Fatal for this document."""
    pass


class ConsistencyError(KnowledgeStoreError):
    """Metadata and index disagree."""
    pass


class CorruptSnapshot(ConsistencyError):
    """Snapshot on disk failed validation."""

    def __init__(self, snapshot_id: int, reason: str):
        self.snapshot_id = snapshot_id
        self.reason = reason
        super().__init__(f"Snapshot {snapshot_id} is corrupt: {reason}")


class StorageError(KnowledgeStoreError):
    """Disk write failed; durability has not advanced."""
    pass


class SnapshotNotFound(KnowledgeStoreError):
    """No valid snapshot exists in the store directory."""
    pass
