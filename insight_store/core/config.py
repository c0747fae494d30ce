"""
Knowledge store configuration.
All settings come from the environment (optionally a .env file).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Store directory holding snapshot-<id> directories and the change log
STORE_DIR = os.getenv("STORE_DIR", "./data/store")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Embedding configuration
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence_transformers|ollama
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
EMBED_MAX_ATTEMPTS = int(os.getenv("EMBED_MAX_ATTEMPTS", "4"))
EMBED_BACKOFF_BASE_SEC = float(os.getenv("EMBED_BACKOFF_BASE_SEC", "0.5"))
EMBED_BACKOFF_MAX_SEC = float(os.getenv("EMBED_BACKOFF_MAX_SEC", "8.0"))

# Similarity index configuration
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "faiss")  # faiss|memory
HNSW_M = int(os.getenv("HNSW_M", "32"))
HNSW_EF_CONSTRUCTION = int(os.getenv("HNSW_EF_CONSTRUCTION", "200"))
HNSW_EF_SEARCH = int(os.getenv("HNSW_EF_SEARCH", "128"))

# Query configuration
CANDIDATE_FACTOR = int(os.getenv("CANDIDATE_FACTOR", "3"))
QUERY_MAX_ROUNDS = int(os.getenv("QUERY_MAX_ROUNDS", "4"))
QUERY_TIMEOUT_SEC = float(os.getenv("QUERY_TIMEOUT_SEC", "0"))  # 0 disables the deadline

# Persistence configuration
CHANGELOG_ENABLED = os.getenv("CHANGELOG_ENABLED", "true").lower() == "true"
CHANGELOG_FSYNC = os.getenv("CHANGELOG_FSYNC", "true").lower() == "true"
SNAPSHOT_RETAIN = int(os.getenv("SNAPSHOT_RETAIN", "3"))
SNAPSHOT_ENCRYPTION_ENABLED = os.getenv("SNAPSHOT_ENCRYPTION_ENABLED", "false").lower() == "true"
SNAPSHOT_MASTER_PASSWORD = os.getenv("SNAPSHOT_MASTER_PASSWORD")

# Background maintenance (default disabled)
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"
SNAPSHOT_INTERVAL_SEC = int(os.getenv("SNAPSHOT_INTERVAL_SEC", "300"))
COMPACTION_INTERVAL_SEC = int(os.getenv("COMPACTION_INTERVAL_SEC", "600"))
COMPACTION_TOMBSTONE_RATIO = float(os.getenv("COMPACTION_TOMBSTONE_RATIO", "0.2"))

VERSION = "1.0.0"


def get_similarity_index(dimension: int = None):
    """Get configured similarity index implementation."""
    dimension = dimension or EMBED_DIM

    if VECTOR_PROVIDER == "faiss":
        from ..vector.faiss_store import FaissVectorStore
        return FaissVectorStore(
            dimension=dimension,
            m=HNSW_M,
            ef_construction=HNSW_EF_CONSTRUCTION,
            ef_search=HNSW_EF_SEARCH,
        )

    from ..vector.index import BruteForceIndex
    return BruteForceIndex(dimension=dimension)


def get_embedding_provider():
    """Get configured embedding provider implementation."""
    if EMBED_PROVIDER == "sentence_transformers":
        from ..vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)
    elif EMBED_PROVIDER == "ollama":
        from ..vector.embeddings import OllamaEmbedding
        return OllamaEmbedding(EMBED_MODEL_NAME, dimension=EMBED_DIM, host=OLLAMA_HOST)

    from ..vector.embeddings import DeterministicHashEmbedding
    return DeterministicHashEmbedding(dimension=EMBED_DIM)


def get_retry_policy():
    """Get the embedding retry policy."""
    from ..vector.embeddings import RetryPolicy
    return RetryPolicy(
        max_attempts=EMBED_MAX_ATTEMPTS,
        base_delay=EMBED_BACKOFF_BASE_SEC,
        max_delay=EMBED_BACKOFF_MAX_SEC,
    )


def get_query_timeout():
    """Default query deadline in seconds, or None when disabled."""
    return QUERY_TIMEOUT_SEC if QUERY_TIMEOUT_SEC > 0 else None


def is_heartbeat_enabled():
    """Check if background snapshot/compaction is enabled."""
    return os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"


def validate_heartbeat_config():
    """Validate heartbeat intervals and return any issues."""
    issues = []
    if SNAPSHOT_INTERVAL_SEC < 1:
        issues.append("SNAPSHOT_INTERVAL_SEC must be >= 1")
    if COMPACTION_INTERVAL_SEC < 1:
        issues.append("COMPACTION_INTERVAL_SEC must be >= 1")
    return issues


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_store_directory(store_dir: str = None) -> Path:
    """Ensure the store directory exists."""
    path = Path(store_dir or STORE_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if VECTOR_PROVIDER not in ["faiss", "memory"]:
        issues.append(f"Invalid VECTOR_PROVIDER: {VECTOR_PROVIDER}")

    if EMBED_PROVIDER not in ["hash", "sentence_transformers", "ollama"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if CANDIDATE_FACTOR < 3:
        issues.append("CANDIDATE_FACTOR must be >= 3")

    if QUERY_MAX_ROUNDS < 1:
        issues.append("QUERY_MAX_ROUNDS must be >= 1")

    if EMBED_MAX_ATTEMPTS < 1:
        issues.append("EMBED_MAX_ATTEMPTS must be >= 1")

    if SNAPSHOT_RETAIN < 1:
        issues.append("SNAPSHOT_RETAIN must be >= 1")

    if SNAPSHOT_ENCRYPTION_ENABLED and not SNAPSHOT_MASTER_PASSWORD:
        issues.append("SNAPSHOT_ENCRYPTION_ENABLED requires SNAPSHOT_MASTER_PASSWORD")

    if not 0 < COMPACTION_TOMBSTONE_RATIO <= 1:
        issues.append("COMPACTION_TOMBSTONE_RATIO must be in (0, 1]")

    if HEARTBEAT_ENABLED:
        issues.extend(validate_heartbeat_config())

    return issues
