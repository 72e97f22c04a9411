"""
Tests for incremental centroid maintenance, exact pruned search and reconciliation.
"""

import numpy as np
import pytest

from engram.vector.clusters import ClusterIndex
from engram.vector.index import KeyValueVectorStorage
from engram.vector.ranking import linear_scan
from engram.vector.similarity import angle_between
from engram.vector.sqlite_store import SqliteVectorStorage


@pytest.fixture(params=["kv", "sqlite"])
def storage(request, tmp_path):
    if request.param == "sqlite":
        backend = SqliteVectorStorage(str(tmp_path / "clusters.db"))
    else:
        backend = KeyValueVectorStorage()
    backend.initialize()
    return backend


def add(storage, index, entity_id, vector, owner_id="user-1"):
    stored, previous = storage.upsert_record(owner_id, "note", entity_id, np.asarray(vector, dtype=np.float32))
    if previous is not None:
        index.unassign(previous)
    stored.cluster_id = index.assign(stored)
    return stored


def remove(storage, index, entity_id):
    removed = storage.delete_by_entity("note", entity_id)
    index.unassign(removed)


def clustered_dataset(rng, count=240, dimensions=8, centers=6):
    """Vectors scattered around a few directions, so pruning has work to do."""
    directions = rng.normal(size=(centers, dimensions))
    return [directions[i % centers] + rng.normal(scale=0.25, size=dimensions) for i in range(count)]


def assert_matches_linear_scan(storage, index, queries, k=7):
    for query in queries:
        expected = linear_scan(storage, "user-1", query, k)
        actual = index.search("user-1", query, k)
        assert [r.id for r in actual] == [r.id for r in expected]
        assert [r.similarity for r in actual] == pytest.approx([r.similarity for r in expected])


def test_pruned_search_equals_linear_scan(storage, rng):
    index = ClusterIndex(storage)
    for i, vector in enumerate(clustered_dataset(rng)):
        add(storage, index, f"n{i}", vector)

    assert len(storage.list_clusters("user-1")) > 1
    assert_matches_linear_scan(storage, index, rng.normal(size=(15, 8)))


def test_search_exact_after_updates_and_deletes(storage, rng):
    index = ClusterIndex(storage)
    vectors = clustered_dataset(rng, count=120)
    for i, vector in enumerate(vectors):
        add(storage, index, f"n{i}", vector)

    for i in range(0, 120, 3):
        remove(storage, index, f"n{i}")
    for i in range(1, 120, 5):
        add(storage, index, f"n{i}", rng.normal(size=8))

    assert_matches_linear_scan(storage, index, rng.normal(size=(10, 8)))
    state = index.inspect("user-1")
    assert state["miscounted_clusters"] == []
    assert state["dangling_references"] == 0


def test_radius_bounds_every_member(storage, rng):
    index = ClusterIndex(storage)
    for i, vector in enumerate(clustered_dataset(rng, count=90)):
        add(storage, index, f"n{i}", vector)

    for cluster in storage.list_clusters("user-1"):
        for member in storage.list_records("user-1", cluster_id=cluster.id):
            assert angle_between(member.vector, cluster.centroid) <= cluster.radius + 1e-6


def test_empty_index_falls_back_to_linear_scan(storage, rng):
    """Records written without any centroid bookkeeping are still found."""
    index = ClusterIndex(storage)
    for i in range(10):
        storage.upsert_record("user-1", "note", f"n{i}", rng.normal(size=4).astype(np.float32))

    assert storage.list_clusters("user-1") == []
    query = rng.normal(size=4)
    assert index.search("user-1", query, 3) == linear_scan(storage, "user-1", query, 3)


def test_first_vector_seeds_cluster(storage):
    index = ClusterIndex(storage)
    record = add(storage, index, "a", [1.0, 0.0])

    clusters = storage.list_clusters("user-1")
    assert len(clusters) == 1
    assert record.cluster_id == clusters[0].id
    assert clusters[0].member_count == 1
    assert clusters[0].baseline_count == 1
    assert clusters[0].radius == 0.0


def test_close_vector_joins_and_updates_running_mean(storage):
    index = ClusterIndex(storage)
    first = add(storage, index, "a", [1.0, 0.0])
    second = add(storage, index, "b", [0.9, 0.1])

    assert second.cluster_id == first.cluster_id
    cluster = storage.get_cluster(first.cluster_id)
    assert cluster.member_count == 2
    np.testing.assert_allclose(cluster.centroid, [0.95, 0.05], rtol=1e-6)
    assert cluster.radius > 0


def test_distant_vector_seeds_new_cluster(storage):
    index = ClusterIndex(storage)
    first = add(storage, index, "a", [1.0, 0.0])
    second = add(storage, index, "b", [0.0, 1.0])

    assert second.cluster_id != first.cluster_id
    assert len(storage.list_clusters("user-1")) == 2


def test_max_centroids_forces_nearest_assignment(storage):
    index = ClusterIndex(storage, max_centroids=1)
    first = add(storage, index, "a", [1.0, 0.0])
    second = add(storage, index, "b", [-1.0, 0.0])

    assert second.cluster_id == first.cluster_id
    assert len(storage.list_clusters("user-1")) == 1


def test_zero_vector_is_never_clustered(storage):
    index = ClusterIndex(storage)
    record = add(storage, index, "zero", [0.0, 0.0])

    assert record.cluster_id is None
    assert storage.get_by_entity("note", "zero").cluster_id is None
    assert storage.list_clusters("user-1") == []


def test_removing_last_member_removes_cluster(storage):
    index = ClusterIndex(storage)
    add(storage, index, "a", [1.0, 0.0])
    remove(storage, index, "a")

    assert storage.list_clusters("user-1") == []


def test_stale_cluster_is_recomputed_on_delete(storage):
    index = ClusterIndex(storage)
    for i, vector in enumerate([[1.0, 0.0], [0.95, 0.05], [0.9, 0.1], [0.97, 0.03]]):
        add(storage, index, f"n{i}", vector)
    cluster_id = storage.get_by_entity("note", "n0").cluster_id
    assert storage.get_cluster(cluster_id).member_count == 4

    remove(storage, index, "n0")
    cluster = storage.get_cluster(cluster_id)
    assert cluster.member_count == 3
    assert cluster.baseline_count == 4

    # 2 < 4 * 0.75 crosses the staleness threshold
    remove(storage, index, "n1")
    cluster = storage.get_cluster(cluster_id)
    assert cluster.member_count == 2
    assert cluster.baseline_count == 2
    np.testing.assert_allclose(cluster.centroid, [0.935, 0.065], rtol=1e-5)


class TestReconcile:

    def test_restores_member_counts(self, storage, rng):
        index = ClusterIndex(storage)
        for i, vector in enumerate(clustered_dataset(rng, count=60)):
            add(storage, index, f"n{i}", vector)

        cluster = storage.list_clusters("user-1")[0]
        cluster.member_count = 99
        storage.save_cluster(cluster)
        assert cluster.id in index.inspect("user-1")["miscounted_clusters"]

        report = index.reconcile("user-1")

        assert cluster.id in report.recomputed_ids
        assert index.inspect("user-1")["miscounted_clusters"] == []

    def test_repairs_dangling_references(self, storage, rng):
        index = ClusterIndex(storage)
        for i, vector in enumerate(clustered_dataset(rng, count=30)):
            add(storage, index, f"n{i}", vector)
        orphan = storage.get_by_entity("note", "n5")
        storage.set_cluster_id(orphan.id, 9999)

        # Dangling records are still scanned before repair
        assert_matches_linear_scan(storage, index, [orphan.vector], k=1)
        assert index.inspect("user-1")["dangling_references"] == 1

        report = index.reconcile("user-1")

        assert report.records_reassigned == 1
        state = index.inspect("user-1")
        assert state["dangling_references"] == 0
        assert state["miscounted_clusters"] == []
        assert storage.get_by_entity("note", "n5").cluster_id is not None

    def test_removes_empty_clusters(self, storage):
        index = ClusterIndex(storage)
        record = add(storage, index, "a", [1.0, 0.0])
        storage.set_cluster_id(record.id, None)

        report = index.reconcile("user-1")

        assert report.clusters_removed == 1
        assert storage.list_clusters("user-1") == []

    def test_force_recomputes_every_cluster(self, storage, rng):
        index = ClusterIndex(storage)
        for i, vector in enumerate(clustered_dataset(rng, count=30)):
            add(storage, index, f"n{i}", vector)
        clusters = storage.list_clusters("user-1")

        quiet = index.reconcile("user-1")
        forced = index.reconcile("user-1", force=True)

        assert quiet.clusters_recomputed == 0
        assert forced.clusters_recomputed == len(clusters)
        assert forced.to_dict()["clusters_examined"] == len(clusters)
