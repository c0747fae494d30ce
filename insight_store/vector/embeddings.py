"""
Embedding providers and retry handling for the external embedding service.
Providers map text to a fixed-length vector and raise the provider error taxonomy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import hashlib
import struct
import time
from typing import Callable, List, Optional

import httpx

from ..core.errors import InvalidInput, ProviderError, ProviderUnavailable, RateLimited
from ..util.logging import logger


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for testing purposes.

    Expands a SHA-256 chain of the text into as many dimensions as needed,
    so identical text always maps to the identical vector without any
    model dependency.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def embed_text(self, text: str) -> List[float]:
        """Generate deterministic embedding vector using hash function."""
        if not isinstance(text, str):
            raise InvalidInput("Embedding input must be a string")

        vector = []
        counter = 0
        while len(vector) < self.dimension:
            digest = hashlib.sha256(f"{counter}:{text}".encode("utf-8")).digest()
            for (value,) in struct.iter_unpack(">I", digest):
                # Map to [-1, 1]
                vector.append((value / 2 ** 32) * 2 - 1)
            counter += 1

        return vector[:self.dimension]

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError("sentence-transformers not installed. Install the 'embeddings' extra.")
            try:
                self._model = SentenceTransformer(self.model_name)
            except OSError as e:
                raise ProviderUnavailable(f"Could not load model {self.model_name}: {e}") from e
        return self._model

    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector using sentence transformers."""
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Embedding input must be a non-empty string")
        embedding = self.model.encode(text, convert_to_tensor=False)
        return embedding.tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension


class OllamaEmbedding(IEmbeddingProvider):
    """Remote embedding service backed by a local Ollama server."""

    def __init__(self, model_name: str, dimension: int, host: Optional[str] = None, client=None):
        self.model_name = model_name
        self.dimension = dimension
        self.host = host
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import ollama
            self._client = ollama.Client(host=self.host)
        return self._client

    def embed_text(self, text: str) -> List[float]:
        """Request an embedding, mapping failures onto the provider errors."""
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Embedding input must be a non-empty string")

        import ollama

        try:
            response = self.client.embeddings(model=self.model_name, prompt=text)
        except ollama.ResponseError as e:
            status = getattr(e, "status_code", None) or 0
            if status == 429:
                raise RateLimited(f"Ollama rate limited: {e.error}") from e
            if 400 <= status < 500:
                raise InvalidInput(f"Ollama rejected input ({status}): {e.error}") from e
            raise ProviderUnavailable(f"Ollama server error ({status}): {e.error}") from e
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"Ollama timed out at {self.host}: {e}") from e
        except (httpx.TransportError, ConnectionError) as e:
            raise ProviderUnavailable(f"Ollama unreachable at {self.host}: {e}") from e

        embedding = response["embedding"] if isinstance(response, dict) else response.embedding
        return list(embedding)

    def get_dimension(self) -> int:
        return self.dimension


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for retryable provider errors."""
    max_attempts: int = 4
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int, error: Optional[ProviderError] = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = min(max(delay, float(retry_after)), self.max_delay)
        return delay


def embed_with_retry(
    provider: IEmbeddingProvider,
    text: str,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[float]:
    """Call the provider, retrying RateLimited/ProviderUnavailable with backoff.

    InvalidInput and other non-retryable errors propagate immediately. When
    retries are exhausted the last error propagates. Anything the provider
    raises outside the taxonomy is wrapped in a non-retryable ProviderError.
    """
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return provider.embed_text(text)
        except ProviderError as e:
            if not e.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt, e)
            logger.log_provider_retry(attempt, policy.max_attempts, delay, str(e))
            sleep(delay)
        except Exception as e:
            raise ProviderError(f"Embedding provider failed: {type(e).__name__}: {e}") from e

    # The loop either returns or raises
    raise ProviderUnavailable("Embedding retries exhausted")
