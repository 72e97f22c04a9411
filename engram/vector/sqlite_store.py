"""
SQLite-backed implementation of IVectorStorage.
Vectors are stored as float32 BLOBs; insertion order is the table rowid.
"""

import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

from ..core.db import get_db, init_db
from .codec import decode_vector, encode_vector
from .index import IVectorStorage
from .types import ClusterCentroid, EmbeddingRecord

RECORD_COLUMNS = "rowid, id, owner_id, entity_type, entity_id, vector, dimensions, cluster_id, created_at"
CLUSTER_COLUMNS = "id, owner_id, centroid, dimensions, member_count, radius, baseline_count, updated_at"


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class SqliteVectorStorage(IVectorStorage):
    """Embedded relational backend. Each call opens its own connection."""

    def __init__(self, db_path: str):
        if db_path == ":memory:":
            # Every call opens a fresh connection, which would see an empty database
            raise ValueError("SqliteVectorStorage needs a file path; use KeyValueVectorStorage for in-memory use")
        self.db_path = db_path

    def initialize(self) -> None:
        init_db(self.db_path)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            vector=decode_vector(row["vector"], row["dimensions"]),
            dimensions=row["dimensions"],
            cluster_id=row["cluster_id"],
            created_at=_parse_timestamp(row["created_at"]),
            seq=row["rowid"],
        )

    @staticmethod
    def _row_to_cluster(row: sqlite3.Row) -> ClusterCentroid:
        return ClusterCentroid(
            id=row["id"],
            owner_id=row["owner_id"],
            centroid=decode_vector(row["centroid"], row["dimensions"]),
            dimensions=row["dimensions"],
            member_count=row["member_count"],
            updated_at=_parse_timestamp(row["updated_at"]),
            radius=row["radius"],
            baseline_count=row["baseline_count"],
        )

    def _fetch_record(self, cursor, entity_type: str, entity_id: str) -> Optional[EmbeddingRecord]:
        cursor.execute(
            f"SELECT {RECORD_COLUMNS} FROM vector_embeddings WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id)
        )
        row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def upsert_record(self, owner_id, entity_type, entity_id, vector):
        blob = encode_vector(vector)
        dimensions = int(len(vector))

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            try:
                previous = self._fetch_record(cursor, entity_type, entity_id)
                if previous:
                    # Update existing
                    cursor.execute(
                        "UPDATE vector_embeddings SET vector = ?, dimensions = ?, owner_id = ?, cluster_id = NULL "
                        "WHERE entity_type = ? AND entity_id = ?",
                        (blob, dimensions, owner_id, entity_type, entity_id)
                    )
                else:
                    # Insert new
                    cursor.execute(
                        "INSERT INTO vector_embeddings (id, owner_id, entity_type, entity_id, vector, dimensions, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (str(uuid.uuid4()), owner_id, entity_type, entity_id, blob, dimensions,
                         datetime.now().isoformat())
                    )
                stored = self._fetch_record(cursor, entity_type, entity_id)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        return stored, previous

    def get_by_entity(self, entity_type, entity_id):
        with get_db(self.db_path) as conn:
            return self._fetch_record(conn.cursor(), entity_type, entity_id)

    def delete_by_entity(self, entity_type, entity_id):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            existing = self._fetch_record(cursor, entity_type, entity_id)
            if existing is None:
                return None
            cursor.execute(
                "DELETE FROM vector_embeddings WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id)
            )
            conn.commit()
            return existing

    def list_records(self, owner_id, cluster_id=None, exclude_clusters=None):
        query = f"SELECT {RECORD_COLUMNS} FROM vector_embeddings WHERE owner_id = ?"
        params: List = [owner_id]

        if cluster_id is not None:
            query += " AND cluster_id = ?"
            params.append(cluster_id)
        if exclude_clusters is not None:
            excluded = list(exclude_clusters)
            if excluded:
                placeholders = ", ".join("?" for _ in excluded)
                query += f" AND (cluster_id IS NULL OR cluster_id NOT IN ({placeholders}))"
                params.extend(excluded)

        query += " ORDER BY rowid"

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def partition_dimensions(self, owner_id):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT dimensions FROM vector_embeddings WHERE owner_id = ? ORDER BY rowid LIMIT 1",
                (owner_id,)
            )
            row = cursor.fetchone()
            return row["dimensions"] if row else None

    def find_entity_type(self, entity_id):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT entity_type FROM vector_embeddings WHERE entity_id = ? ORDER BY rowid LIMIT 1",
                (entity_id,)
            )
            row = cursor.fetchone()
            return row["entity_type"] if row else None

    def set_cluster_id(self, record_id, cluster_id):
        with get_db(self.db_path) as conn:
            conn.execute("UPDATE vector_embeddings SET cluster_id = ? WHERE id = ?", (cluster_id, record_id))
            conn.commit()

    def count(self, owner_id=None):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            if owner_id is None:
                cursor.execute("SELECT COUNT(*) FROM vector_embeddings")
            else:
                cursor.execute("SELECT COUNT(*) FROM vector_embeddings WHERE owner_id = ?", (owner_id,))
            return cursor.fetchone()[0]

    def list_clusters(self, owner_id):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT {CLUSTER_COLUMNS} FROM vector_clusters WHERE owner_id = ? ORDER BY id", (owner_id,))
            return [self._row_to_cluster(row) for row in cursor.fetchall()]

    def get_cluster(self, cluster_id):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT {CLUSTER_COLUMNS} FROM vector_clusters WHERE id = ?", (cluster_id,))
            row = cursor.fetchone()
            return self._row_to_cluster(row) if row else None

    def save_cluster(self, cluster):
        values = (
            cluster.owner_id,
            encode_vector(cluster.centroid),
            cluster.dimensions,
            cluster.member_count,
            cluster.radius,
            cluster.baseline_count,
            cluster.updated_at.isoformat(),
        )
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            if cluster.id is None:
                cursor.execute(
                    "INSERT INTO vector_clusters (owner_id, centroid, dimensions, member_count, radius, baseline_count, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    values
                )
                cluster_id = cursor.lastrowid
            else:
                cursor.execute(
                    "UPDATE vector_clusters SET owner_id = ?, centroid = ?, dimensions = ?, member_count = ?, "
                    "radius = ?, baseline_count = ?, updated_at = ? WHERE id = ?",
                    values + (cluster.id,)
                )
                cluster_id = cluster.id
            conn.commit()
            return cluster_id

    def delete_cluster(self, cluster_id):
        with get_db(self.db_path) as conn:
            conn.execute("DELETE FROM vector_clusters WHERE id = ?", (cluster_id,))
            conn.commit()

    def clear(self):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM vector_embeddings")
            cursor.execute("DELETE FROM vector_clusters")
            conn.commit()
