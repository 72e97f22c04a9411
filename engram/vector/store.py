"""
Embedding store - the asynchronous public handle over a storage backend and the cluster index.

Construct one per process at startup and pass it to every caller; there is no
module-level instance. Each mutation runs as a single unit in a worker thread
under a thread lock. A cancelled caller stops waiting but its unit still runs to
completion before the next one starts, so a record is never written without its
centroid bookkeeping (or the reverse) and two units never interleave.
"""

import asyncio
import threading
from typing import List, Optional, Sequence, Union

import numpy as np
from pydantic import ValidationError

from ..core.schemas import EmbeddingAddRequest, EmbeddingQueryRequest
from .clusters import ClusterIndex, ReconcileReport
from .codec import as_float32
from .errors import DimensionMismatchError, VectorValidationError
from .index import IVectorStorage
from .ranking import linear_scan
from .types import EmbeddingRecord, EntityType, VectorQueryResult

from util.logging import logger

VectorInput = Union[np.ndarray, Sequence[float]]


class EmbeddingStore:
    """Persistence plus exact top-k cosine search over owner partitions."""

    def __init__(self, storage: IVectorStorage, cluster_index: Optional[ClusterIndex] = None,
                 dimensions: Optional[int] = None, strict_validation: bool = True):
        if dimensions is not None and dimensions <= 0:
            raise ValueError("dimensions must be positive")
        if cluster_index is not None and cluster_index.storage is not storage:
            raise ValueError("cluster_index must wrap the same storage as the store")

        self.storage = storage
        self.cluster_index = cluster_index
        self.dimensions = dimensions
        self.strict_validation = strict_validation

        self._initialized = False
        self._closed = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._mutation_lock = threading.Lock()

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def is_initialized(self) -> bool:
        return self._initialized

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("EmbeddingStore is closed")

    async def initialize(self) -> None:
        """Create the schema once. Concurrent callers wait for the same setup."""
        self._check_open()
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await asyncio.to_thread(self.storage.initialize)
            self._initialized = True
            logger.log_operation("vector_store.initialize", "success", {
                "backend": type(self.storage).__name__,
                "cluster_index": self.cluster_index is not None,
            })

    async def close(self) -> None:
        if self._closed:
            return
        await asyncio.to_thread(self.storage.close)
        self._closed = True

    # Validation

    def _validate_add(self, owner_id: str, entity_type, entity_id: str) -> EmbeddingAddRequest:
        if self.strict_validation:
            try:
                return EmbeddingAddRequest(owner_id=owner_id, entity_type=entity_type, entity_id=entity_id)
            except ValidationError as e:
                logger.log_operation("vector.add", "rejected", {"errors": e.error_count()})
                raise VectorValidationError(f"Invalid embedding request: {e}") from e

        if isinstance(entity_type, EntityType):
            entity_type = entity_type.value
        if not owner_id or not entity_type or not entity_id:
            raise VectorValidationError("owner_id, entity_type and entity_id are required")
        return EmbeddingAddRequest.model_construct(owner_id=owner_id, entity_type=entity_type, entity_id=entity_id)

    def _expected_dimensions(self, owner_id: str) -> Optional[int]:
        if self.dimensions is not None:
            return self.dimensions
        return self.storage.partition_dimensions(owner_id)

    # Mutations

    async def add(self, owner_id: str, entity_type: Union[str, EntityType], entity_id: str,
                  vector: VectorInput) -> str:
        """Upsert the embedding for (entity_type, entity_id) and return the record id."""
        await self.initialize()
        request = self._validate_add(owner_id, entity_type, entity_id)
        array = as_float32(vector)

        async with self._write_lock:
            record = await asyncio.to_thread(
                self._add_sync, request.owner_id, request.entity_type, request.entity_id, array
            )

        logger.log_vector_operation("add", record.id, {
            "owner_id": record.owner_id,
            "entity_type": record.entity_type,
            "dimensions": record.dimensions,
            "cluster_id": record.cluster_id,
        })
        return record.id

    def _add_sync(self, owner_id: str, entity_type: str, entity_id: str, vector: np.ndarray) -> EmbeddingRecord:
        with self._mutation_lock, self.storage.transaction():
            return self._add_unit(owner_id, entity_type, entity_id, vector)

    def _add_unit(self, owner_id: str, entity_type: str, entity_id: str, vector: np.ndarray) -> EmbeddingRecord:
        expected = self._expected_dimensions(owner_id)
        if expected is not None and len(vector) != expected:
            raise DimensionMismatchError(expected, len(vector), owner_id)

        stored, previous = self.storage.upsert_record(owner_id, entity_type, entity_id, vector)

        if self.cluster_index is not None:
            try:
                if previous is not None:
                    self.cluster_index.unassign(previous)
                stored.cluster_id = self.cluster_index.assign(stored)
            except Exception as e:
                # The record is written; an unclustered record is always scanned
                logger.log_cluster_operation("assign", owner_id, details={"record_id": stored.id, "error": str(e)},
                                             status="degraded")
                stored.cluster_id = None
        return stored

    async def delete(self, entity_type: Union[str, EntityType], entity_id: str) -> None:
        """Remove the embedding for (entity_type, entity_id). Absent records are a no-op."""
        await self.initialize()
        if isinstance(entity_type, EntityType):
            entity_type = entity_type.value

        async with self._write_lock:
            removed = await asyncio.to_thread(self._delete_sync, entity_type, entity_id)

        if removed is not None:
            logger.log_vector_operation("delete", removed.id, {
                "owner_id": removed.owner_id,
                "entity_type": removed.entity_type,
            })

    def _delete_sync(self, entity_type: str, entity_id: str) -> Optional[EmbeddingRecord]:
        with self._mutation_lock, self.storage.transaction():
            removed = self.storage.delete_by_entity(entity_type, entity_id)
            if removed is not None and self.cluster_index is not None:
                try:
                    self.cluster_index.unassign(removed)
                except Exception as e:
                    logger.log_cluster_operation("unassign", removed.owner_id, removed.cluster_id,
                                                 {"record_id": removed.id, "error": str(e)}, status="degraded")
            return removed

    # Reads

    async def query(self, owner_id: str, query_vector: VectorInput, k: int) -> List[VectorQueryResult]:
        """At most k records of the partition by descending cosine similarity, ties by insertion order."""
        if k <= 0:
            return []
        await self.initialize()
        if self.strict_validation:
            try:
                EmbeddingQueryRequest(owner_id=owner_id, k=k)
            except ValidationError as e:
                raise VectorValidationError(f"Invalid query request: {e}") from e
        array = as_float32(query_vector)

        return await asyncio.to_thread(self._query_sync, owner_id, array, k)

    def _query_sync(self, owner_id: str, query: np.ndarray, k: int) -> List[VectorQueryResult]:
        expected = self._expected_dimensions(owner_id)
        if expected is None:
            return []
        if len(query) != expected:
            raise DimensionMismatchError(expected, len(query), owner_id)

        if self.cluster_index is None:
            return linear_scan(self.storage, owner_id, query, k)

        try:
            return self.cluster_index.search(owner_id, query, k)
        except VectorValidationError:
            raise
        except Exception as e:
            logger.log_cluster_operation("search", owner_id, details={"error": str(e), "fallback": "linear_scan"},
                                         status="degraded")
            return linear_scan(self.storage, owner_id, query, k)

    async def get_by_entity(self, entity_type: Union[str, EntityType], entity_id: str) -> Optional[EmbeddingRecord]:
        await self.initialize()
        if isinstance(entity_type, EntityType):
            entity_type = entity_type.value
        return await asyncio.to_thread(self.storage.get_by_entity, entity_type, entity_id)

    async def resolve_entity_type(self, entity_id: str) -> Optional[str]:
        """Type tag of the record carrying this entity id, or None if nothing does."""
        await self.initialize()
        return await asyncio.to_thread(self.storage.find_entity_type, entity_id)

    async def count(self, owner_id: Optional[str] = None) -> int:
        await self.initialize()
        return await asyncio.to_thread(self.storage.count, owner_id)

    # Index maintenance

    async def reconcile(self, owner_id: str, force: bool = False) -> ReconcileReport:
        """Restore exact cluster bookkeeping for a partition."""
        await self.initialize()
        if self.cluster_index is None:
            return ReconcileReport(owner_id=owner_id)
        async with self._write_lock:
            return await asyncio.to_thread(self._reconcile_sync, owner_id, force)

    def _reconcile_sync(self, owner_id: str, force: bool) -> ReconcileReport:
        with self._mutation_lock, self.storage.transaction():
            return self.cluster_index.reconcile(owner_id, force)

    async def inspect_index(self, owner_id: str) -> Optional[dict]:
        await self.initialize()
        if self.cluster_index is None:
            return None
        return await asyncio.to_thread(self.cluster_index.inspect, owner_id)
