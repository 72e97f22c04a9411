"""
Cluster index - advisory acceleration layer over the canonical embedding records.

Each record is assigned incrementally to the nearest centroid of its partition.
Centroids are running means; every centroid also keeps `radius`, an upper bound
on the angle to any of its members, which makes query-time pruning exact: a
cluster is skipped only when no member could beat the current k-th match.

Losing or corrupting centroids never loses records. Dangling cluster references
are scanned as if unclustered, and reconcile() rebuilds the bookkeeping.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np

from .index import IVectorStorage
from .ranking import TopK, linear_scan
from .similarity import angle_between, cosine_similarity, similarity_upper_bound, vector_norm
from .types import ClusterCentroid, EmbeddingRecord, VectorQueryResult

from util.logging import logger


@dataclass
class ReconcileReport:
    """Outcome of a reconciliation pass over one partition."""
    owner_id: str
    clusters_examined: int = 0
    clusters_recomputed: int = 0
    clusters_removed: int = 0
    records_reassigned: int = 0
    recomputed_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "owner_id": self.owner_id,
            "clusters_examined": self.clusters_examined,
            "clusters_recomputed": self.clusters_recomputed,
            "clusters_removed": self.clusters_removed,
            "records_reassigned": self.records_reassigned,
            "recomputed_ids": list(self.recomputed_ids),
        }


class ClusterIndex:
    """Incremental centroid maintenance and pruned search over an IVectorStorage.

    Not thread-safe on its own; EmbeddingStore serialises every mutation.
    """

    def __init__(self, storage: IVectorStorage, accept_threshold: float = 0.80,
                 max_centroids: int = 64, staleness_ratio: float = 0.75,
                 prune_epsilon: float = 1e-6):
        self.storage = storage
        self.accept_threshold = accept_threshold
        self.max_centroids = max_centroids
        self.staleness_ratio = staleness_ratio
        self.prune_epsilon = prune_epsilon

    # Assignment

    def assign(self, record: EmbeddingRecord) -> Optional[int]:
        """Attach a record to its nearest centroid, seeding a new one when none is close enough."""
        if vector_norm(record.vector) == 0:
            # Zero vectors stay unclustered and are always scanned
            self.storage.set_cluster_id(record.id, None)
            return None

        clusters = [c for c in self.storage.list_clusters(record.owner_id) if c.dimensions == record.dimensions]

        best: Optional[ClusterCentroid] = None
        best_similarity = -math.inf
        for cluster in clusters:
            similarity = cosine_similarity(record.vector, cluster.centroid)
            if similarity > best_similarity:
                best, best_similarity = cluster, similarity

        if best is not None and (best_similarity > self.accept_threshold or len(clusters) >= self.max_centroids):
            self._absorb(best, record.vector)
            cluster_id = self.storage.save_cluster(best)
        else:
            seeded = ClusterCentroid(
                id=None,
                owner_id=record.owner_id,
                centroid=np.array(record.vector, dtype=np.float32),
                dimensions=record.dimensions,
                member_count=1,
                radius=0.0,
                baseline_count=1,
            )
            cluster_id = self.storage.save_cluster(seeded)
            logger.log_cluster_operation("create", record.owner_id, cluster_id,
                                         {"seed_record": record.id, "centroids": len(clusters) + 1})

        self.storage.set_cluster_id(record.id, cluster_id)
        return cluster_id

    @staticmethod
    def _absorb(cluster: ClusterCentroid, vector: np.ndarray) -> None:
        """Running-mean update; the radius grows by the centroid's own drift."""
        old_centroid = np.asarray(cluster.centroid, dtype=np.float64)
        count = max(cluster.member_count, 0)
        new_centroid = old_centroid + (np.asarray(vector, dtype=np.float64) - old_centroid) / (count + 1)

        drift = angle_between(old_centroid, new_centroid)
        radius = max(cluster.radius + drift, angle_between(vector, new_centroid))

        cluster.centroid = new_centroid.astype(np.float32)
        cluster.member_count = count + 1
        cluster.baseline_count = max(cluster.baseline_count, cluster.member_count)
        cluster.radius = min(radius, math.pi)
        cluster.updated_at = datetime.now()

    def unassign(self, record: EmbeddingRecord) -> None:
        """Account for a member leaving its cluster. The centroid is not backed out."""
        if record.cluster_id is None:
            return
        cluster = self.storage.get_cluster(record.cluster_id)
        if cluster is None:
            return

        cluster.member_count = max(cluster.member_count - 1, 0)
        if cluster.member_count == 0:
            self.storage.delete_cluster(cluster.id)
            logger.log_cluster_operation("remove", cluster.owner_id, cluster.id, {"reason": "empty"})
        elif self.is_stale(cluster):
            self.recompute(cluster)
        else:
            self.storage.save_cluster(cluster)

    def is_stale(self, cluster: ClusterCentroid) -> bool:
        return cluster.member_count < cluster.baseline_count * self.staleness_ratio

    def recompute(self, cluster: ClusterCentroid, members: Optional[List[EmbeddingRecord]] = None) -> bool:
        """Rebuild a centroid from its current members. Returns False if it was removed."""
        if members is None:
            members = self.storage.list_records(cluster.owner_id, cluster_id=cluster.id)
        members = [m for m in members if m.dimensions == cluster.dimensions]

        if not members:
            self.storage.delete_cluster(cluster.id)
            logger.log_cluster_operation("remove", cluster.owner_id, cluster.id, {"reason": "no members"})
            return False

        matrix = np.vstack([np.asarray(m.vector, dtype=np.float64) for m in members])
        centroid = matrix.mean(axis=0)

        if vector_norm(centroid) == 0:
            radius = math.pi
        else:
            radius = max(angle_between(m.vector, centroid) for m in members)

        cluster.centroid = centroid.astype(np.float32)
        cluster.member_count = len(members)
        cluster.baseline_count = len(members)
        cluster.radius = radius
        cluster.updated_at = datetime.now()
        self.storage.save_cluster(cluster)

        logger.log_cluster_operation("recompute", cluster.owner_id, cluster.id,
                                     {"members": len(members), "radius": round(radius, 6)})
        return True

    # Search

    def _upper_bound(self, cluster: ClusterCentroid, query: np.ndarray) -> float:
        if cluster.dimensions != len(query) or cluster.radius >= math.pi:
            return 1.0
        if vector_norm(cluster.centroid) == 0:
            return 1.0
        return similarity_upper_bound(angle_between(query, cluster.centroid), cluster.radius)

    def search(self, owner_id: str, query: np.ndarray, k: int) -> List[VectorQueryResult]:
        """Top-k by cosine similarity, identical to a linear scan."""
        if k <= 0:
            return []

        clusters = self.storage.list_clusters(owner_id)
        if not clusters or vector_norm(query) == 0:
            return linear_scan(self.storage, owner_id, query, k)

        ranker = TopK(k)
        known_ids = [c.id for c in clusters]
        # Unclustered records and records pointing at unknown clusters are always candidates
        scanned = ranker.extend(self.storage.list_records(owner_id, exclude_clusters=known_ids), query)

        bounded = sorted(((self._upper_bound(c, query), c.id) for c in clusters), key=lambda item: (-item[0], item[1]))
        visited = 0
        for bound, cluster_id in bounded:
            kth = ranker.kth_similarity()
            if kth is not None and kth > bound + self.prune_epsilon:
                break
            scanned += ranker.extend(self.storage.list_records(owner_id, cluster_id=cluster_id), query)
            visited += 1

        logger.debug(f"cluster search owner={owner_id} k={k} clusters={visited}/{len(clusters)} scanned={scanned}")
        return ranker.results()

    # Reconciliation

    def reconcile(self, owner_id: str, force: bool = False) -> ReconcileReport:
        """Restore exact member counts, centroids and radii for one partition."""
        report = ReconcileReport(owner_id=owner_id)
        clusters = {c.id: c for c in self.storage.list_clusters(owner_id)}

        members: Dict[int, List[EmbeddingRecord]] = defaultdict(list)
        dangling: List[EmbeddingRecord] = []
        for record in self.storage.list_records(owner_id):
            if record.cluster_id is None:
                continue
            if record.cluster_id in clusters:
                members[record.cluster_id].append(record)
            else:
                dangling.append(record)

        for cluster_id, cluster in clusters.items():
            report.clusters_examined += 1
            actual = members.get(cluster_id, [])
            if not actual:
                self.storage.delete_cluster(cluster_id)
                report.clusters_removed += 1
                continue
            if force or len(actual) != cluster.member_count or self.is_stale(cluster):
                self.recompute(cluster, actual)
                report.clusters_recomputed += 1
                report.recomputed_ids.append(cluster_id)

        for record in dangling:
            record.cluster_id = None
            self.assign(record)
            report.records_reassigned += 1

        logger.log_cluster_operation("reconcile", owner_id, details=report.to_dict())
        return report

    def inspect(self, owner_id: str) -> Dict[str, object]:
        """Read-only view of index drift for maintenance reporting."""
        clusters = {c.id: c for c in self.storage.list_clusters(owner_id)}
        actual_counts: Dict[int, int] = defaultdict(int)
        unclustered = 0
        dangling = 0
        records = self.storage.list_records(owner_id)
        for record in records:
            if record.cluster_id is None:
                unclustered += 1
            elif record.cluster_id in clusters:
                actual_counts[record.cluster_id] += 1
            else:
                dangling += 1

        miscounted = [cid for cid, c in clusters.items() if c.member_count != actual_counts.get(cid, 0)]
        stale = [cid for cid, c in clusters.items() if self.is_stale(c)]
        return {
            "owner_id": owner_id,
            "records": len(records),
            "clusters": len(clusters),
            "unclustered_records": unclustered,
            "dangling_references": dangling,
            "miscounted_clusters": miscounted,
            "stale_clusters": stale,
        }
