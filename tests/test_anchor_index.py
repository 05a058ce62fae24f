from dataclasses import replace

import pytest

from facegroups.config import ClusteringConfig
from facegroups.recognition.anchor_index import AnchorIndex, AnchorIndexSnapshot, select_matching_anchors
from facegroups.storage.store import ClusterStore
from facegroups.types import PersonCluster, PoseCategory

from conftest import anchor, unit


def test_select_matching_anchors_keeps_pose_diversity():
    frontal = [anchor(f"f{i}", "C", unit({i: 1.0}), quality=90.0 - i) for i in range(9)]
    profile = anchor("p", "C", unit({20: 1.0}), quality=40.0, pose=PoseCategory.PROFILE_LEFT)

    chosen = select_matching_anchors(frontal + [profile], limit=7)

    assert len(chosen) == 7
    assert chosen[0].anchor_id == "f0"
    assert "p" in {a.anchor_id for a in chosen}
    assert "f8" not in {a.anchor_id for a in chosen}


def test_snapshot_matches_only_same_dimension_anchors():
    anchors = [
        anchor("a1", "A", unit({0: 1.0})),
        anchor("b1", "B", unit({0: 0.6, 1: 0.8})),
        anchor("c1", "C", unit({0: 1.0}, dim=192)),
    ]
    snapshot = AnchorIndexSnapshot(version=1, anchors=anchors, max_per_cluster=7)

    matches = snapshot.match(unit({0: 1.0}))

    assert [m.anchor_id for m in matches] == ["a1", "b1"]
    assert matches[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert matches[1].similarity == pytest.approx(0.6, abs=1e-5)
    assert snapshot.match(unit({0: 1.0}), cluster_id="B")[0].anchor_id == "b1"
    assert snapshot.match(unit({0: 1.0}, dim=128)) == []


def test_snapshot_is_cached_until_anchor_set_changes():
    store = ClusterStore()
    with store.transaction() as txn:
        txn.put_cluster(PersonCluster("A"))
        txn.put_anchor(anchor("a1", "A", unit({0: 1.0})))
    index = AnchorIndex(store, ClusteringConfig())

    first = index.snapshot()
    assert index.snapshot() is first

    with store.transaction() as txn:
        txn.put_anchor(anchor("a2", "A", unit({1: 1.0})))
    second = index.snapshot()

    assert second is not first
    assert second.version > first.version
    assert second.anchor_count == 2
    assert not index.is_current(first)


def test_inactive_anchors_and_deleted_clusters_are_not_matched():
    store = ClusterStore()
    with store.transaction() as txn:
        txn.put_cluster(PersonCluster("A"))
        txn.put_cluster(PersonCluster("B", is_deleted=True))
        txn.put_anchor(anchor("a1", "A", unit({0: 1.0})))
        txn.put_anchor(replace(anchor("a2", "A", unit({1: 1.0})), is_active=False))
        txn.put_anchor(anchor("b1", "B", unit({0: 1.0})))
        txn.put_anchor(anchor("x1", "missing", unit({0: 1.0})))

    snapshot = AnchorIndex(store).snapshot()

    assert snapshot.cluster_ids == ["A"]
    assert [m.anchor_id for m in snapshot.match(unit({0: 1.0}))] == ["a1"]
