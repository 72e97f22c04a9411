"""
Embedding providers. Text in, fixed-length float32 vector out.

The real model is an external collaborator; the core only depends on
IEmbeddingProvider, so tests can use the deterministic hash provider.
"""

import asyncio
import hashlib
import re
from abc import ABC, abstractmethod

import numpy as np

from .errors import EmbeddingError

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Collapse runs of whitespace and strip."""
    if text is None:
        return ""
    return _WHITESPACE.sub(" ", str(text)).strip()


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Generate embedding vector for given text.

        Raises EmbeddingError when the model is unavailable or the text is
        empty after normalization. Callers should treat it as retryable.
        """
        pass

    @abstractmethod
    def get_dimensions(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    def _prepare(self, text: str) -> str:
        normalized = normalize_text(text)
        if not normalized:
            raise EmbeddingError("Cannot embed empty text")
        return normalized


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for testing purposes.

    Seeds a generator from the MD5 digest of the normalized text, so the same
    text always maps to the same unit-length vector without any model files.
    """

    def __init__(self, dimension: int = 384):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    def embed_sync(self, text: str) -> np.ndarray:
        normalized = self._prepare(text)
        digest = hashlib.md5(normalized.encode("utf-8")).digest()
        rng = np.random.default_rng(int.from_bytes(digest, "little"))

        vector = rng.uniform(-1.0, 1.0, self.dimension)
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.astype(np.float32)

    async def embed(self, text: str) -> np.ndarray:
        return self.embed_sync(text)

    def get_dimensions(self) -> int:
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models.

    The model is loaded on first use; encoding runs in a worker thread so the
    event loop is not blocked by inference.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", dimension: int = None):
        self.model_name = model_name
        self._model = None
        self._dimension = dimension

    @property
    def model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise EmbeddingError(
                    "sentence-transformers is required for SentenceTransformerEmbedding. "
                    "Install with: pip install 'engram-memory[embeddings]'",
                    retryable=False,
                ) from e
            try:
                self._model = SentenceTransformer(self.model_name)
            except Exception as e:
                raise EmbeddingError(f"Failed to load embedding model {self.model_name}: {e}") from e
        return self._model

    def _encode(self, text: str) -> np.ndarray:
        embedding = self.model.encode(text, convert_to_tensor=False, show_progress_bar=False)
        return np.asarray(embedding, dtype=np.float32)

    async def embed(self, text: str) -> np.ndarray:
        normalized = self._prepare(text)
        try:
            vector = await asyncio.to_thread(self._encode, normalized)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding inference failed: {e}") from e

        if self._dimension is not None and len(vector) != self._dimension:
            raise EmbeddingError(
                f"Model {self.model_name} produced {len(vector)} dimensions, expected {self._dimension}",
                retryable=False,
            )
        return vector

    def get_dimensions(self) -> int:
        if self._dimension is None:
            self._dimension = int(self.model.get_sentence_embedding_dimension())
        return self._dimension
