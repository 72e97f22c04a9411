"""
Shared fixtures: embedding stores over both backends, with and without the cluster index.
"""

import numpy as np
import pytest

from engram.vector.clusters import ClusterIndex
from engram.vector.index import KeyValueVectorStorage
from engram.vector.sqlite_store import SqliteVectorStorage
from engram.vector.store import EmbeddingStore


@pytest.fixture
def store_factory(tmp_path):
    """Build EmbeddingStore handles; sqlite stores share one database file per test."""
    def make(backend: str = "kv", clustered: bool = True, **kwargs) -> EmbeddingStore:
        if backend == "sqlite":
            storage = SqliteVectorStorage(str(tmp_path / "engram.db"))
        else:
            storage = KeyValueVectorStorage()
        cluster_index = ClusterIndex(storage) if clustered else None
        return EmbeddingStore(storage, cluster_index=cluster_index, **kwargs)
    return make


@pytest.fixture(params=[("sqlite", True), ("kv", True), ("kv", False)],
                ids=["sqlite-clustered", "kv-clustered", "kv-linear"])
def store(request, store_factory):
    backend, clustered = request.param
    return store_factory(backend, clustered)


@pytest.fixture
def rng():
    return np.random.default_rng(7)
