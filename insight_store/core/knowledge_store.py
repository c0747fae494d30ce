"""
KnowledgeStore: owns the similarity index and metadata table and keeps them
in lock-step across ingestion, deletion, compaction and recovery.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np

from . import config
from .changelog import ChangeEntry, ChangeLog
from .concurrency import ReadWriteLock
from .errors import (
    ConsistencyError,
    KnowledgeStoreError,
    ProviderError,
    ProviderUnavailable,
    SnapshotNotFound,
    StorageError,
    ValidationError,
)
from .metadata_store import MetadataStore
from .persistence import PersistenceManager, SnapshotManifest, StoreImage
from .query_engine import QueryEngine
from .schema import (
    Document,
    EnrichedResult,
    IngestOutcome,
    MetadataRecord,
    StoreStats,
    summarize_outcomes,
)
from ..vector.embeddings import IEmbeddingProvider, RetryPolicy, embed_with_retry
from ..vector.faiss_store import FaissVectorStore
from ..vector.index import BruteForceIndex, ISimilarityIndex, normalize_vector
from ..vector.types import IndexState
from ..util.logging import logger, audit_event

CHANGELOG_FILE = "changes.log"

# Default for query timeouts: use QUERY_TIMEOUT_SEC. Pass None for no deadline.
CONFIG_TIMEOUT = object()

DocumentInput = Union[Document, Dict[str, Any]]


def restore_index(state: IndexState) -> ISimilarityIndex:
    """Rebuild an index of the kind recorded in ``state``."""
    if state.kind == FaissVectorStore.kind:
        return FaissVectorStore.from_state(state)
    if state.kind == BruteForceIndex.kind:
        return BruteForceIndex.from_state(state)
    raise ConsistencyError(f"Unknown index kind '{state.kind}'")


@dataclass
class StoreView:
    """Read-only handles valid while the shared lock is held."""
    index: ISimilarityIndex
    metadata: MetadataStore


class KnowledgeStore:
    """Vector-indexed knowledge store.

    Writers embed outside any lock, then commit under the writer mutex:
    the change log entry is written first, then index and metadata are
    updated together under the exclusive side of the read/write lock.
    Readers hold the shared side for the whole query.
    """

    def __init__(
        self,
        dimension: Optional[int] = None,
        embedding_provider: Optional[IEmbeddingProvider] = None,
        index: Optional[ISimilarityIndex] = None,
        persistence: Optional[PersistenceManager] = None,
        changelog: Optional[ChangeLog] = None,
        retry_policy: Optional[RetryPolicy] = None,
        candidate_factor: Optional[int] = None,
        max_rounds: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if dimension is None:
            if index is not None:
                dimension = index.dimension
            elif embedding_provider is not None:
                dimension = embedding_provider.get_dimension()
            else:
                dimension = config.EMBED_DIM
        if dimension < 1:
            raise ValidationError("dimension must be >= 1")

        if index is None:
            index = config.get_similarity_index(dimension)
        if index.dimension != dimension:
            raise ValidationError(f"Index dimension {index.dimension} does not match store dimension {dimension}")

        self.dimension = dimension
        self.embedding_provider = embedding_provider
        self.persistence = persistence
        self.changelog = changelog
        self.retry_policy = retry_policy or config.get_retry_policy()
        self._sleep = sleep

        self._index = index
        self._metadata = MetadataStore()
        self._rw = ReadWriteLock()
        self._writer = threading.Lock()
        self._snapshot_lock = threading.Lock()
        self._sequence = 0
        self._last_snapshot_id: Optional[int] = None

        self.query_engine = QueryEngine(
            self,
            candidate_factor=candidate_factor or config.CANDIDATE_FACTOR,
            max_rounds=max_rounds or config.QUERY_MAX_ROUNDS,
        )

    @classmethod
    def open(
        cls,
        store_dir=None,
        dimension: Optional[int] = None,
        embedding_provider: Optional[IEmbeddingProvider] = None,
        index_factory: Optional[Callable[[int], ISimilarityIndex]] = None,
        changelog_enabled: Optional[bool] = None,
        fsync: Optional[bool] = None,
        encryption_password: Optional[str] = None,
        retain: Optional[int] = None,
        **kwargs,
    ) -> "KnowledgeStore":
        """Open a store directory: load the newest valid snapshot, replay the
        change log on top of it and verify consistency.

        Raises:
            ValidationError: requested dimension differs from the persisted one
            ConsistencyError: the recovered state is inconsistent
        """
        store_path = config.ensure_store_directory(store_dir)
        if encryption_password is None and config.SNAPSHOT_ENCRYPTION_ENABLED:
            encryption_password = config.SNAPSHOT_MASTER_PASSWORD
        persistence = PersistenceManager(
            store_path,
            retain=retain or config.SNAPSHOT_RETAIN,
            encryption_password=encryption_password,
        )
        persistence.cleanup_temp()

        if changelog_enabled is None:
            changelog_enabled = config.CHANGELOG_ENABLED
        changelog = None
        if changelog_enabled:
            changelog = ChangeLog(
                Path(store_path) / CHANGELOG_FILE,
                fsync=config.CHANGELOG_FSYNC if fsync is None else fsync,
            )

        try:
            loaded = persistence.load()
        except SnapshotNotFound:
            loaded = None
            logger.log_recovery("empty", {"store_dir": str(store_path)})

        if loaded is not None:
            persisted_dim = loaded.manifest.dimension
            if dimension is not None and dimension != persisted_dim:
                raise ValidationError(
                    f"Store at {store_path} has dimension {persisted_dim}, requested {dimension}"
                )
            dimension = persisted_dim
            index = restore_index(loaded.index_state)
        else:
            if dimension is None:
                dimension = embedding_provider.get_dimension() if embedding_provider else config.EMBED_DIM
            index = index_factory(dimension) if index_factory else config.get_similarity_index(dimension)

        store = cls(
            dimension=dimension,
            embedding_provider=embedding_provider,
            index=index,
            persistence=persistence,
            changelog=changelog,
            **kwargs,
        )

        if loaded is not None:
            store._metadata.load(loaded.records)
            store._sequence = loaded.manifest.sequence
            store._last_snapshot_id = loaded.manifest.snapshot_id

        if changelog is not None:
            replayed = store._replay(changelog.read(after_seq=store._sequence))
            # Keep history back to the oldest retained snapshot; rewriting also
            # drops a torn tail that would swallow the next append
            floor = persistence.oldest_sequence()
            changelog.truncate_through(min(floor, loaded.manifest.sequence) if loaded else 0)
            if replayed:
                logger.log_recovery("replayed", {"entries": replayed, "sequence": store._sequence})

        store.check_consistency()
        logger.log_recovery("ready", {
            "store_dir": str(store_path),
            "documents": len(store._metadata),
            "index_kind": store._index.kind,
            "sequence": store._sequence
        })
        return store

    # Properties

    @property
    def index(self) -> ISimilarityIndex:
        return self._index

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def last_snapshot_id(self) -> Optional[int]:
        return self._last_snapshot_id

    def __len__(self) -> int:
        with self._rw.read():
            return len(self._metadata)

    def __contains__(self, identity: str) -> bool:
        with self._rw.read():
            return identity in self._metadata

    @contextmanager
    def read_view(self):
        """Hold the shared lock and expose index and metadata to a reader."""
        with self._rw.read():
            yield StoreView(index=self._index, metadata=self._metadata)

    # Ingestion

    def ingest(self, document: DocumentInput) -> str:
        """Embed and store a document. Returns its identity.

        Raises:
            ValidationError: malformed document or wrong embedding dimension
            ProviderError: embedding failed after retries
            StorageError: the change log could not be written
        """
        identity, _ = self.ingest_with_status(document)
        return identity

    def ingest_embedded(self, document: DocumentInput, vector) -> str:
        """Store a document with a vector computed upstream."""
        identity, _ = self.ingest_with_status(document, vector)
        return identity

    def ingest_with_status(self, document: DocumentInput, vector=None) -> Tuple[str, str]:
        """Like ``ingest``/``ingest_embedded`` but also returns the status
        (``ingested``, ``replaced`` or ``unchanged``)."""
        document = self._coerce(document)
        if vector is not None:
            return document.identity, self._commit_put(document, vector)
        return self._ingest_one(document)

    def ingest_batch(self, documents: Iterable[DocumentInput]) -> List[IngestOutcome]:
        """Ingest documents independently; one failure never aborts the rest."""
        outcomes = []
        for item in documents:
            identity = None
            try:
                document = self._coerce(item)
                identity = document.identity
                identity, status = self._ingest_one(document)
                outcomes.append(IngestOutcome(identity=identity, status=status))
            except KnowledgeStoreError as e:
                # provider failures are already logged by _ingest_one
                if not isinstance(e, ProviderError):
                    logger.log_ingest(identity or "-", "failed", {"error_type": type(e).__name__, "error": str(e)[:200]})
                outcomes.append(IngestOutcome(identity=identity, status="failed", error=str(e)))

        audit_event(
            event_type="ingest_batch",
            identifiers={"documents": len(outcomes)},
            payload=summarize_outcomes(outcomes)
        )
        return outcomes

    def _coerce(self, document: DocumentInput) -> Document:
        if isinstance(document, Document):
            return document
        return Document.from_dict(document)

    def _ingest_one(self, document: Document) -> Tuple[str, str]:
        with self._rw.read():
            existing = self._metadata.get(document.identity)
            existing_content = self._metadata.get_content(document.identity)
            stored_vector = self._index.get_vector(document.identity)

        if existing == document.metadata() and existing_content == document.content:
            logger.log_ingest(document.identity, "unchanged")
            return document.identity, "unchanged"

        # Identity covers content and source, so a re-crawl keeps its vector
        if existing_content == document.content and stored_vector is not None:
            return document.identity, self._commit_put(document, stored_vector)

        if self.embedding_provider is None:
            raise ProviderUnavailable("No embedding provider configured; use ingest_embedded")

        try:
            vector = embed_with_retry(self.embedding_provider, document.content, self.retry_policy, self._sleep)
        except ProviderError as e:
            logger.log_ingest(document.identity, "failed", {"error_type": type(e).__name__, "error": str(e)[:200]})
            raise

        return document.identity, self._commit_put(document, vector)

    def _commit_put(self, document: Document, vector) -> str:
        """Write the change log entry, then update index and metadata together."""
        normalized = normalize_vector(vector, self.dimension)
        record = document.metadata()

        with self._writer:
            previous = self._metadata.get(document.identity)
            if previous == record and self._metadata.get_content(document.identity) == document.content:
                logger.log_ingest(document.identity, "unchanged")
                return "unchanged"

            seq = self._sequence + 1
            self._log(ChangeEntry(
                seq=seq,
                op="put",
                identity=document.identity,
                record=record.to_dict(),
                content=document.content,
                vector=normalized.tolist(),
            ))

            try:
                with self._rw.write():
                    status = self._apply_put(record, document.content, normalized)
            except Exception:
                self._compensate(seq + 1, document.identity, previous)
                raise
            self._sequence = seq

        logger.log_ingest(document.identity, status, {"category": record.category, "source": record.source})
        return status

    def _log(self, entry: ChangeEntry) -> None:
        if self.changelog is None:
            return
        try:
            self.changelog.append(entry)
        except StorageError as e:
            logger.log_operation("store.commit", "failed", {
                "identity": entry.identity,
                "op": entry.op,
                "error": str(e)[:200]
            })
            raise

    def _compensate(self, seq: int, identity: str, previous: Optional[MetadataRecord]) -> None:
        """Undo a logged put whose in-memory apply failed."""
        if previous is None:
            entry = ChangeEntry(seq=seq, op="delete", identity=identity)
        else:
            vector = self._index.get_vector(identity)
            entry = ChangeEntry(
                seq=seq,
                op="put",
                identity=identity,
                record=previous.to_dict(),
                content=self._metadata.get_content(identity),
                vector=vector.tolist() if vector is not None else None,
            )
        self._log(entry)
        self._sequence = seq

    def _apply_put(self, record: MetadataRecord, content: str, normalized: np.ndarray) -> str:
        """Insert into index and metadata; leaves both untouched on failure.

        A put whose vector matches the stored one only rewrites metadata, so
        re-crawls of the same content leave no tombstones behind.
        """
        identity = record.identity
        previous_vector = self._index.get_vector(identity)
        if previous_vector is not None and np.allclose(previous_vector, normalized, atol=1e-6):
            self._metadata.put(identity, record, content)
            return "replaced"

        self._index.insert(identity, normalized)
        try:
            self._metadata.put(identity, record, content)
        except Exception:
            self._index.delete(identity)
            if previous_vector is not None:
                self._index.insert(identity, previous_vector)
            raise
        return "replaced" if previous_vector is not None else "ingested"

    def _apply_delete(self, identity: str) -> bool:
        existed = self._metadata.remove(identity) is not None
        self._index.delete(identity)
        return existed

    def _apply_reset(self) -> None:
        self._metadata.clear()
        self._index.clear()

    # Removal

    def delete(self, identity: str) -> bool:
        """Remove a document from index and metadata. Idempotent.

        Returns True if the identity was present.
        """
        with self._writer:
            if identity not in self._metadata:
                logger.log_delete(identity, existed=False)
                return False

            seq = self._sequence + 1
            self._log(ChangeEntry(seq=seq, op="delete", identity=identity))
            with self._rw.write():
                self._apply_delete(identity)
            self._sequence = seq

        logger.log_delete(identity, existed=True)
        return True

    def reset(self) -> None:
        """Remove every document."""
        with self._writer:
            seq = self._sequence + 1
            self._log(ChangeEntry(seq=seq, op="reset"))
            with self._rw.write():
                self._apply_reset()
            self._sequence = seq

        logger.log_operation("store.reset", "success", {"sequence": self._sequence})
        audit_event(event_type="store_reset", identifiers={"sequence": self._sequence})

    # Reads

    def get(self, identity: str) -> Optional[Document]:
        """Stored document for an identity, or None."""
        with self._rw.read():
            record = self._metadata.get(identity)
            content = self._metadata.get_content(identity)
        if record is None:
            return None
        return Document(
            identity=record.identity,
            title=record.title,
            content=content or "",
            source=record.source,
            source_url=record.source_url,
            category=record.category,
            timestamp=record.timestamp,
        )

    def stats(self) -> StoreStats:
        with self._rw.read():
            return StoreStats(
                total_documents=len(self._metadata),
                category_counts=self._metadata.counts_by("category"),
                source_counts=self._metadata.counts_by("source"),
                tombstones=self._index.tombstone_count,
                dimension=self.dimension,
                sequence=self._sequence,
                last_snapshot_id=self._last_snapshot_id,
            )

    def query(self, query_vector, filters: Optional[Dict[str, Any]] = None, k: int = 5,
              timeout=CONFIG_TIMEOUT) -> List[EnrichedResult]:
        """Filtered top-k similarity search. See QueryEngine.query.

        ``timeout`` defaults to the configured query deadline; None disables it.
        """
        if timeout is CONFIG_TIMEOUT:
            timeout = config.get_query_timeout()
        return self.query_engine.query(query_vector, filters=filters, k=k, timeout=timeout)

    def query_text(self, text: str, filters: Optional[Dict[str, Any]] = None, k: int = 5,
                   timeout=CONFIG_TIMEOUT) -> List[EnrichedResult]:
        """Embed ``text`` with the store's provider and query with it."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("query text cannot be empty")
        if self.embedding_provider is None:
            raise ProviderUnavailable("No embedding provider configured")
        vector = embed_with_retry(self.embedding_provider, text, self.retry_policy, self._sleep)
        return self.query(vector, filters=filters, k=k, timeout=timeout)

    # Maintenance

    def check_consistency(self) -> None:
        """Raise ConsistencyError unless metadata and live index entries agree."""
        with self._rw.read():
            metadata_ids = self._metadata.identities()
            index_ids = self._index.live_ids()
        if metadata_ids != index_ids:
            missing = sorted(metadata_ids - index_ids)
            orphaned = sorted(index_ids - metadata_ids)
            raise ConsistencyError(
                f"Metadata/index mismatch: {len(missing)} records without vectors, "
                f"{len(orphaned)} orphaned vectors (e.g. {(missing or orphaned)[:3]})"
            )

    def snapshot(self) -> SnapshotManifest:
        """Persist the current state and rotate the change log.

        Raises:
            StorageError: the snapshot could not be written
        """
        if self.persistence is None:
            raise StorageError("No persistence configured for this store")

        with self._snapshot_lock:
            with self._rw.read():
                image = StoreImage(
                    records=self._metadata.items(),
                    index_state=self._index.export_state(),
                    sequence=self._sequence,
                )

            manifest = self.persistence.snapshot(image)
            self._last_snapshot_id = manifest.snapshot_id

            removed = self.persistence.prune()
            if removed:
                logger.log_snapshot(manifest.snapshot_id, "pruned", {"removed": removed})

            if self.changelog is not None:
                with self._writer:
                    try:
                        # Entries newer than the oldest retained snapshot stay for fallback replay
                        self.changelog.truncate_through(self.persistence.oldest_sequence())
                    except StorageError as e:
                        # Entries at or below the snapshot sequence are skipped on replay
                        logger.warning(f"Change log rotation failed after snapshot {manifest.snapshot_id}: {e}")

        return manifest

    def compact(self) -> int:
        """Rebuild the index without tombstones. Returns rows reclaimed.

        Readers keep using the old index until the swap.
        """
        with self._writer:
            with self._rw.read():
                current = self._index
                reclaimed = current.tombstone_count
            if reclaimed == 0:
                return 0

            start = time.time()
            # No writer can touch ``current`` while the mutex is held
            replacement = current.compacted()
            with self._rw.write():
                self._index = replacement
            end = time.time()

        logger.log_compaction(start, end, reclaimed, len(replacement))
        return reclaimed

    def tombstone_ratio(self) -> float:
        with self._rw.read():
            dead = self._index.tombstone_count
            total = dead + len(self._index)
        return dead / total if total else 0.0

    def maybe_compact(self, ratio: Optional[float] = None) -> int:
        """Compact when the share of tombstoned rows reaches ``ratio``."""
        ratio = config.COMPACTION_TOMBSTONE_RATIO if ratio is None else ratio
        if self.tombstone_ratio() >= ratio and self._index.tombstone_count:
            return self.compact()
        return 0

    def close(self, snapshot: bool = False) -> None:
        """Optionally snapshot before the process exits."""
        if snapshot and self.persistence is not None:
            self.snapshot()
        logger.log_operation("store.close", "success", {"sequence": self._sequence})

    # Recovery

    def _replay(self, entries: List[ChangeEntry]) -> int:
        """Apply change log entries newer than the loaded snapshot.

        Raises:
            ConsistencyError: an entry cannot be applied, or the log skips
                sequence numbers the loaded snapshot does not cover
        """
        applied = 0
        for entry in entries:
            if entry.seq != self._sequence + 1:
                raise ConsistencyError(
                    f"Change log jumps from sequence {self._sequence} to {entry.seq}; "
                    f"writes in between are not recoverable"
                )
            try:
                if entry.op == "put":
                    record = MetadataRecord.from_dict(entry.record or {})
                    if record.identity != entry.identity or entry.vector is None:
                        raise ValidationError("put entry lacks identity or vector")
                    self._apply_put(record, entry.content or "", normalize_vector(entry.vector, self.dimension))
                elif entry.op == "delete":
                    self._apply_delete(entry.identity)
                else:
                    self._apply_reset()
            except ValidationError as e:
                raise ConsistencyError(f"Change log entry {entry.seq} cannot be applied: {e}") from e
            self._sequence = entry.seq
            applied += 1
        return applied
