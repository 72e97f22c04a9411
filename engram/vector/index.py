"""
Vector memory overlay - storage backends.

IVectorStorage is the synchronous capability interface both backends implement.
EmbeddingStore drives it from worker threads, so implementations must tolerate
being called from a thread other than the one that constructed them.
"""

import json
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .codec import decode_vector_base64, encode_vector_base64
from .types import ClusterCentroid, EmbeddingRecord

from util.logging import logger


class IVectorStorage(ABC):
    """Abstract interface for embedding and centroid persistence."""

    @abstractmethod
    def initialize(self) -> None:
        """Establish the persistent schema if absent. Must be idempotent."""
        pass

    @abstractmethod
    def upsert_record(self, owner_id: str, entity_type: str, entity_id: str,
                      vector: np.ndarray) -> Tuple[EmbeddingRecord, Optional[EmbeddingRecord]]:
        """Insert or update the record for (entity_type, entity_id).

        Returns the stored record and the record as it was before, if any.
        An update keeps id, seq and created_at and clears cluster_id, so a
        changed vector is never left under a centroid whose bound misses it.
        """
        pass

    @abstractmethod
    def get_by_entity(self, entity_type: str, entity_id: str) -> Optional[EmbeddingRecord]:
        pass

    @abstractmethod
    def delete_by_entity(self, entity_type: str, entity_id: str) -> Optional[EmbeddingRecord]:
        """Remove a record, returning it, or None when absent."""
        pass

    @abstractmethod
    def list_records(self, owner_id: str, cluster_id: Optional[int] = None,
                     exclude_clusters: Optional[Iterable[int]] = None) -> List[EmbeddingRecord]:
        """Records of a partition in seq order.

        With cluster_id, only that cluster's members. With exclude_clusters,
        only records whose cluster_id is None or not in the given set.
        """
        pass

    @abstractmethod
    def partition_dimensions(self, owner_id: str) -> Optional[int]:
        """Dimensionality of the partition's first record, or None when empty."""
        pass

    @abstractmethod
    def find_entity_type(self, entity_id: str) -> Optional[str]:
        """Reverse lookup of an entity's type from its bare id."""
        pass

    @abstractmethod
    def set_cluster_id(self, record_id: str, cluster_id: Optional[int]) -> None:
        pass

    @abstractmethod
    def count(self, owner_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def list_clusters(self, owner_id: str) -> List[ClusterCentroid]:
        pass

    @abstractmethod
    def get_cluster(self, cluster_id: int) -> Optional[ClusterCentroid]:
        pass

    @abstractmethod
    def save_cluster(self, cluster: ClusterCentroid) -> int:
        """Insert (id None) or update a centroid, returning its id."""
        pass

    @abstractmethod
    def delete_cluster(self, cluster_id: int) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove all records and centroids."""
        pass

    @contextmanager
    def transaction(self):
        """Group the mutations of one store operation. Override if needed."""
        yield

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


class KeyValueVectorStorage(IVectorStorage):
    """Document-style storage keyed by "entity_type:entity_id".

    Vectors are held as base64 float32 text. With a path the whole document is
    rewritten to a JSON file once per transaction, or after each mutation made
    outside one; without one it lives in memory.
    """

    FORMAT_VERSION = 1

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._entries: Dict[str, dict] = {}
        self._clusters: Dict[int, dict] = {}
        self._keys_by_id: Dict[str, str] = {}
        self._next_seq = 1
        self._next_cluster_id = 1
        self._initialized = False
        self._depth = 0
        self._dirty = False

    @staticmethod
    def _key(entity_type: str, entity_id: str) -> str:
        return f"{entity_type}:{entity_id}"

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return

            if self.path and self.path.exists():
                try:
                    document = json.loads(self.path.read_text(encoding="utf-8"))
                    self._load(document)
                except (ValueError, KeyError, TypeError) as e:
                    # Start fresh, keeping the unreadable file for inspection
                    corrupt_path = self.path.with_suffix(self.path.suffix + ".corrupt")
                    self.path.replace(corrupt_path)
                    logger.log_operation("kv_storage.load", "degraded",
                                         {"path": str(self.path), "moved_to": str(corrupt_path), "error": str(e)})
                    self._entries.clear()
                    self._clusters.clear()
                    self._keys_by_id.clear()
                    self._next_seq = 1
                    self._next_cluster_id = 1

            self._initialized = True

    def _load(self, document: dict) -> None:
        entries = {}
        for entry in document["embeddings"]:
            entries[self._key(entry["entity_type"], entry["entity_id"])] = entry
        clusters = {int(c["id"]): c for c in document.get("clusters", [])}

        self._entries = entries
        self._clusters = clusters
        self._keys_by_id = {entry["id"]: key for key, entry in entries.items()}
        self._next_seq = int(document.get("next_seq", len(entries) + 1))
        self._next_cluster_id = int(document.get("next_cluster_id", max(clusters, default=0) + 1))

    @contextmanager
    def transaction(self):
        with self._lock:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0 and self._dirty:
                    self._write_document()

    def _persist(self) -> None:
        if not self.path:
            return
        if self._depth:
            self._dirty = True
            return
        self._write_document()

    def _write_document(self) -> None:
        self._dirty = False
        document = {
            "version": self.FORMAT_VERSION,
            "next_seq": self._next_seq,
            "next_cluster_id": self._next_cluster_id,
            "embeddings": list(self._entries.values()),
            "clusters": list(self._clusters.values()),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document), encoding="utf-8")
        tmp_path.replace(self.path)

    @staticmethod
    def _to_record(entry: dict) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=entry["id"],
            owner_id=entry["owner_id"],
            entity_type=entry["entity_type"],
            entity_id=entry["entity_id"],
            vector=decode_vector_base64(entry["vector"], entry["dimensions"]),
            dimensions=entry["dimensions"],
            cluster_id=entry.get("cluster_id"),
            created_at=datetime.fromisoformat(entry["created_at"]),
            seq=entry["seq"],
        )

    @staticmethod
    def _to_cluster(entry: dict) -> ClusterCentroid:
        return ClusterCentroid(
            id=entry["id"],
            owner_id=entry["owner_id"],
            centroid=decode_vector_base64(entry["centroid"], entry["dimensions"]),
            dimensions=entry["dimensions"],
            member_count=entry["member_count"],
            updated_at=datetime.fromisoformat(entry["updated_at"]),
            radius=entry.get("radius", 0.0),
            baseline_count=entry.get("baseline_count", 0),
        )

    def upsert_record(self, owner_id, entity_type, entity_id, vector):
        with self._lock:
            key = self._key(entity_type, entity_id)
            existing = self._entries.get(key)
            previous = self._to_record(existing) if existing else None

            entry = {
                "id": existing["id"] if existing else str(uuid.uuid4()),
                "owner_id": owner_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "vector": encode_vector_base64(vector),
                "dimensions": int(len(vector)),
                "cluster_id": None,
                "created_at": existing["created_at"] if existing else datetime.now().isoformat(),
                "seq": existing["seq"] if existing else self._next_seq,
            }
            if not existing:
                self._next_seq += 1

            self._entries[key] = entry
            self._keys_by_id[entry["id"]] = key
            self._persist()
            return self._to_record(entry), previous

    def get_by_entity(self, entity_type, entity_id):
        with self._lock:
            entry = self._entries.get(self._key(entity_type, entity_id))
            return self._to_record(entry) if entry else None

    def delete_by_entity(self, entity_type, entity_id):
        with self._lock:
            entry = self._entries.pop(self._key(entity_type, entity_id), None)
            if entry is None:
                return None
            self._keys_by_id.pop(entry["id"], None)
            self._persist()
            return self._to_record(entry)

    def list_records(self, owner_id, cluster_id=None, exclude_clusters=None):
        excluded = set(exclude_clusters) if exclude_clusters is not None else None
        with self._lock:
            entries = [e for e in self._entries.values() if e["owner_id"] == owner_id]
            if cluster_id is not None:
                entries = [e for e in entries if e.get("cluster_id") == cluster_id]
            if excluded is not None:
                entries = [e for e in entries if e.get("cluster_id") is None or e.get("cluster_id") not in excluded]
            entries.sort(key=lambda e: e["seq"])
            return [self._to_record(e) for e in entries]

    def partition_dimensions(self, owner_id):
        with self._lock:
            owned = [e for e in self._entries.values() if e["owner_id"] == owner_id]
            if not owned:
                return None
            return min(owned, key=lambda e: e["seq"])["dimensions"]

    def find_entity_type(self, entity_id):
        with self._lock:
            matches = [e for e in self._entries.values() if e["entity_id"] == entity_id]
            if not matches:
                return None
            return min(matches, key=lambda e: e["seq"])["entity_type"]

    def set_cluster_id(self, record_id, cluster_id):
        with self._lock:
            key = self._keys_by_id.get(record_id)
            if key is None:
                return
            self._entries[key]["cluster_id"] = cluster_id
            self._persist()

    def count(self, owner_id=None):
        with self._lock:
            if owner_id is None:
                return len(self._entries)
            return sum(1 for e in self._entries.values() if e["owner_id"] == owner_id)

    def list_clusters(self, owner_id):
        with self._lock:
            clusters = [c for c in self._clusters.values() if c["owner_id"] == owner_id]
            clusters.sort(key=lambda c: c["id"])
            return [self._to_cluster(c) for c in clusters]

    def get_cluster(self, cluster_id):
        with self._lock:
            entry = self._clusters.get(cluster_id)
            return self._to_cluster(entry) if entry else None

    def save_cluster(self, cluster):
        with self._lock:
            cluster_id = cluster.id
            if cluster_id is None:
                cluster_id = self._next_cluster_id
                self._next_cluster_id += 1

            self._clusters[cluster_id] = {
                "id": cluster_id,
                "owner_id": cluster.owner_id,
                "centroid": encode_vector_base64(cluster.centroid),
                "dimensions": cluster.dimensions,
                "member_count": cluster.member_count,
                "updated_at": cluster.updated_at.isoformat(),
                "radius": cluster.radius,
                "baseline_count": cluster.baseline_count,
            }
            self._persist()
            return cluster_id

    def delete_cluster(self, cluster_id):
        with self._lock:
            if self._clusters.pop(cluster_id, None) is not None:
                self._persist()

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._clusters.clear()
            self._keys_by_id.clear()
            self._next_seq = 1
            self._next_cluster_id = 1
            self._persist()
