import math

import numpy as np
import pytest

from facegroups.config import ClusteringConfig
from facegroups.recognition.statistics import (
    StatisticsRefresher,
    acceptance_threshold,
    compute_cluster_statistics,
    refresh_cluster,
)
from facegroups.storage.store import ClusterStore

from conftest import anchor, face, seed_cluster, unit


def test_acceptance_threshold_clamps_to_bounds():
    assert acceptance_threshold(0.90, 0.0) == pytest.approx(0.65)
    assert acceptance_threshold(0.50, 0.10) == pytest.approx(0.45)
    assert acceptance_threshold(0.60, 0.05) == pytest.approx(0.50)
    assert acceptance_threshold(math.nan, 0.1) == pytest.approx(0.65)
    assert acceptance_threshold(0.6, math.inf) == pytest.approx(0.65)


def test_acceptance_threshold_always_within_bounds():
    rng = np.random.default_rng(7)
    for mean, std in zip(rng.uniform(-1.0, 1.0, 200), rng.uniform(0.0, 1.0, 200)):
        value = acceptance_threshold(float(mean), float(std))
        assert 0.45 <= value <= 0.65


def test_statistics_need_two_anchors():
    single = [anchor("a1", "C", unit({0: 1.0}))]

    assert compute_cluster_statistics("C", single, total_face_count=3) is None


def test_pairwise_statistics():
    anchors = [
        anchor("a1", "C", unit({0: 1.0})),
        anchor("a2", "C", unit({0: 0.8, 1: 0.6})),
        anchor("a3", "C", unit({0: 0.6, 1: 0.8})),
    ]

    result = compute_cluster_statistics("C", anchors, total_face_count=5, now=123)
    stats = result.statistics

    # pair similarities: 0.8, 0.6, 0.96
    assert stats.mean_similarity == pytest.approx((0.8 + 0.6 + 0.96) / 3, abs=1e-5)
    assert stats.min_similarity == pytest.approx(0.6, abs=1e-5)
    assert stats.max_similarity == pytest.approx(0.96, abs=1e-5)
    assert stats.anchor_count == 3
    assert stats.sample_count == 3
    assert stats.total_face_count == 5
    assert stats.pose_distribution == {"FRONTAL": 3}
    assert stats.last_updated_at == 123
    assert 0.45 <= stats.acceptance_threshold <= 0.65
    assert result.anchor_means["a1"] == pytest.approx(0.7, abs=1e-5)


def test_inactive_and_foreign_dimension_anchors_are_ignored():
    anchors = [
        anchor("a1", "C", unit({0: 1.0})),
        anchor("a2", "C", unit({0: 1.0})),
        anchor("a3", "C", unit({1: 1.0})),
        anchor("a4", "C", unit({0: 1.0}, dim=192)),
    ]
    anchors[2].is_active = False

    stats = compute_cluster_statistics("C", anchors, total_face_count=4).statistics

    assert stats.anchor_count == 2
    assert stats.mean_similarity == pytest.approx(1.0, abs=1e-5)
    assert stats.acceptance_threshold == pytest.approx(0.65)


def test_refresh_cluster_stores_statistics_and_anchor_means():
    store = ClusterStore()
    seed_cluster(store, "C", [face("f1", unit({0: 1.0})), face("f2", unit({0: 0.8, 1: 0.6}))])

    stats = refresh_cluster(store, "C", now=5)

    assert store.get_statistics("C") == stats
    assert stats.mean_similarity == pytest.approx(0.8, abs=1e-5)
    assert store.get_anchor("anchor-f1").intra_cluster_mean_similarity == pytest.approx(0.8, abs=1e-5)


def test_refresh_drops_statistics_of_deleted_cluster():
    store = ClusterStore()
    cluster = seed_cluster(store, "C", [face("f1", unit({0: 1.0})), face("f2", unit({0: 1.0}))])
    refresh_cluster(store, "C")
    cluster.is_deleted = True
    with store.transaction() as txn:
        txn.put_cluster(cluster)

    assert refresh_cluster(store, "C") is None
    assert store.get_statistics("C") is None


def test_refresher_processes_dirty_clusters_in_background():
    store = ClusterStore()
    seed_cluster(store, "C", [face("f1", unit({0: 1.0})), face("f2", unit({0: 0.8, 1: 0.6}))])
    refresher = StatisticsRefresher(store, ClusteringConfig(), clock=lambda: 42)
    try:
        refresher.schedule_dirty()
        refresher.drain(timeout=5)
    finally:
        refresher.shutdown()

    assert store.get_statistics("C").last_updated_at == 42
    assert store.pop_dirty_clusters() == set()
