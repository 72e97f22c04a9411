"""
Configuration for the semantic memory core.
Values come from the environment; factories re-read it so tests can toggle settings.
"""

import os
from typing import List

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/engram.db")

# Debug flag
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Storage backend (sqlite = embedded relational, kv = JSON document store)
VECTOR_BACKEND = os.getenv("VECTOR_BACKEND", "sqlite")  # sqlite|kv
KV_STORE_PATH = os.getenv("KV_STORE_PATH", "")  # empty = in-memory

# Embedding provider configuration
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence_transformers
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "30"))

# Cluster index configuration
CLUSTER_INDEX_ENABLED = os.getenv("CLUSTER_INDEX_ENABLED", "true").lower() == "true"
CLUSTER_ACCEPT_THRESHOLD = float(os.getenv("CLUSTER_ACCEPT_THRESHOLD", "0.80"))
CLUSTER_MAX_CENTROIDS = int(os.getenv("CLUSTER_MAX_CENTROIDS", "64"))
CLUSTER_STALENESS_RATIO = float(os.getenv("CLUSTER_STALENESS_RATIO", "0.75"))
CLUSTER_PRUNE_EPSILON = float(os.getenv("CLUSTER_PRUNE_EPSILON", "1e-6"))

# Retrieval: fixed so the downstream prompt stays bounded; not read from the environment
CONTEXT_TOP_K = 5

# Schema validation of mutation input
SCHEMA_VALIDATION_STRICT = os.getenv("SCHEMA_VALIDATION_STRICT", "true").lower() == "true"

# Version string
VERSION = "0.1.0"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def debug_enabled():
    """Check if debug mode is enabled."""
    return _env_bool("DEBUG", "false")


def is_cluster_index_enabled():
    """Check if the cluster index should be maintained and consulted."""
    return _env_bool("CLUSTER_INDEX_ENABLED", "true")


def is_schema_validation_strict():
    return _env_bool("SCHEMA_VALIDATION_STRICT", "true")


def get_vector_storage():
    """Get the configured storage backend implementation."""
    backend = os.getenv("VECTOR_BACKEND", VECTOR_BACKEND)

    if backend == "sqlite":
        from ..vector.sqlite_store import SqliteVectorStorage
        return SqliteVectorStorage(os.getenv("DB_PATH", DB_PATH))
    elif backend == "kv":
        from ..vector.index import KeyValueVectorStorage
        return KeyValueVectorStorage(os.getenv("KV_STORE_PATH", KV_STORE_PATH) or None)
    else:
        raise ValueError(f"Unknown vector backend: {backend!r}. Supported: 'sqlite', 'kv'")


def get_embedding_provider():
    """Get configured embedding provider implementation."""
    provider = os.getenv("EMBED_PROVIDER", EMBED_PROVIDER)
    dimension = int(os.getenv("EMBED_DIM", str(EMBED_DIM)))

    if provider == "hash":
        from ..vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(dimension)
    elif provider == "sentence_transformers":
        from ..vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(os.getenv("EMBED_MODEL_NAME", EMBED_MODEL_NAME), dimension)
    else:
        raise ValueError(f"Unknown embedding provider: {provider!r}. Supported: 'hash', 'sentence_transformers'")


def get_cluster_index(storage):
    """Get a cluster index over the given storage, or None when disabled."""
    if not is_cluster_index_enabled():
        return None

    from ..vector.clusters import ClusterIndex
    return ClusterIndex(
        storage,
        accept_threshold=float(os.getenv("CLUSTER_ACCEPT_THRESHOLD", str(CLUSTER_ACCEPT_THRESHOLD))),
        max_centroids=int(os.getenv("CLUSTER_MAX_CENTROIDS", str(CLUSTER_MAX_CENTROIDS))),
        staleness_ratio=float(os.getenv("CLUSTER_STALENESS_RATIO", str(CLUSTER_STALENESS_RATIO))),
        prune_epsilon=float(os.getenv("CLUSTER_PRUNE_EPSILON", str(CLUSTER_PRUNE_EPSILON))),
    )


def create_embedding_store(dimensions: int = None):
    """Build a store handle from configuration. Call once at startup and pass it around."""
    from ..vector.store import EmbeddingStore

    storage = get_vector_storage()
    return EmbeddingStore(
        storage,
        cluster_index=get_cluster_index(storage),
        dimensions=dimensions,
        strict_validation=is_schema_validation_strict(),
    )


def validate_config() -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    backend = os.getenv("VECTOR_BACKEND", VECTOR_BACKEND)
    if backend not in ["sqlite", "kv"]:
        issues.append(f"Invalid VECTOR_BACKEND: {backend}")
    if backend == "sqlite" and os.getenv("DB_PATH", DB_PATH) == ":memory:":
        issues.append("DB_PATH=:memory: is not supported by the sqlite backend; use VECTOR_BACKEND=kv")

    provider = os.getenv("EMBED_PROVIDER", EMBED_PROVIDER)
    if provider not in ["hash", "sentence_transformers"]:
        issues.append(f"Invalid EMBED_PROVIDER: {provider}")

    numeric = {
        "EMBED_DIM": (os.getenv("EMBED_DIM", str(EMBED_DIM)), int),
        "EMBED_TIMEOUT_SEC": (os.getenv("EMBED_TIMEOUT_SEC", str(EMBED_TIMEOUT_SEC)), float),
        "CLUSTER_ACCEPT_THRESHOLD": (os.getenv("CLUSTER_ACCEPT_THRESHOLD", str(CLUSTER_ACCEPT_THRESHOLD)), float),
        "CLUSTER_MAX_CENTROIDS": (os.getenv("CLUSTER_MAX_CENTROIDS", str(CLUSTER_MAX_CENTROIDS)), int),
        "CLUSTER_STALENESS_RATIO": (os.getenv("CLUSTER_STALENESS_RATIO", str(CLUSTER_STALENESS_RATIO)), float),
    }
    values = {}
    for name, (raw, cast) in numeric.items():
        try:
            values[name] = cast(raw)
        except ValueError:
            issues.append(f"{name} must be a number, got {raw!r}")

    if values.get("EMBED_DIM", 1) < 1:
        issues.append("EMBED_DIM must be >= 1")
    if values.get("EMBED_TIMEOUT_SEC", 1) <= 0:
        issues.append("EMBED_TIMEOUT_SEC must be > 0")
    if not -1.0 <= values.get("CLUSTER_ACCEPT_THRESHOLD", 0.0) <= 1.0:
        issues.append("CLUSTER_ACCEPT_THRESHOLD must be within [-1, 1]")
    if values.get("CLUSTER_MAX_CENTROIDS", 1) < 1:
        issues.append("CLUSTER_MAX_CENTROIDS must be >= 1")
    if not 0.0 < values.get("CLUSTER_STALENESS_RATIO", 0.5) <= 1.0:
        issues.append("CLUSTER_STALENESS_RATIO must be within (0, 1]")

    return issues
