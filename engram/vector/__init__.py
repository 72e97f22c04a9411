"""
Vector memory overlay - non-canonical, advisory layer over the owners' canonical records.
"""

# Package initialization for vector module
# EmbeddingStore and ClusterIndex are imported from their modules; they depend on engram.core.
from .index import IVectorStorage, KeyValueVectorStorage
from .sqlite_store import SqliteVectorStorage
from .types import EntityType, EmbeddingRecord, ClusterCentroid, VectorQueryResult
from .errors import (
    VectorValidationError,
    DimensionMismatchError,
    VectorEncodingError,
    EmbeddingError,
    EntityFetchError,
)
from .embeddings import IEmbeddingProvider, DeterministicHashEmbedding, SentenceTransformerEmbedding

__all__ = [
    'IVectorStorage',
    'KeyValueVectorStorage',
    'SqliteVectorStorage',
    'EntityType',
    'EmbeddingRecord',
    'ClusterCentroid',
    'VectorQueryResult',
    'VectorValidationError',
    'DimensionMismatchError',
    'VectorEncodingError',
    'EmbeddingError',
    'EntityFetchError',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
]
