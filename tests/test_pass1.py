import numpy as np

from facegroups.clustering.pass1 import (
    REASON_INSUFFICIENT_GAP,
    REASON_NO_NEARBY_ANCHOR,
    REASON_UNCERTAIN,
)
from facegroups.events import EventKind
from facegroups.types import EmbeddingSource

from conftest import face, seed_cluster, unit


def test_first_anchor_face_founds_cluster(engine, recorder):
    result = engine.pass1.run([face("f1", unit({0: 1.0}))])

    cluster_id = engine.store.cluster_of("f1")
    assert cluster_id is not None
    assert result.created == {cluster_id: "f1"}
    assert [a.face_id for a in engine.store.anchors(cluster_id)] == ["f1"]
    assert len(recorder.of_kind(EventKind.CLUSTER_CREATED)) == 1


def test_safe_same_face_joins_and_is_promoted(engine):
    engine.pass1.run([face("f1", unit({0: 1.0})), face("f2", unit({0: 0.71, 1: 0.70412}))])

    cluster_id = engine.store.cluster_of("f1")
    assert engine.store.cluster_of("f2") == cluster_id
    assert sorted(a.face_id for a in engine.store.anchors(cluster_id)) == ["f1", "f2"]
    assert engine.store.get_anchor(engine.store.anchor_for_face("f1").anchor_id).match_count == 1


def test_clustering_tier_joins_without_becoming_anchor(engine):
    engine.pass1.run([face("f1", unit({0: 1.0})), face("f2", unit({0: 0.9, 1: 0.43589}), quality=55.0)])

    cluster_id = engine.store.cluster_of("f1")
    assert engine.store.cluster_of("f2") == cluster_id
    assert [a.face_id for a in engine.store.anchors(cluster_id)] == ["f1"]


def test_clustering_tier_never_founds_a_cluster(engine):
    result = engine.pass1.run([face("f1", unit({0: 1.0}), quality=55.0)])

    assert result.created == {}
    assert engine.store.clusters() == []
    assert [d.reason for d in result.deferred] == [REASON_NO_NEARBY_ANCHOR]


def test_uncertain_score_is_deferred(engine, recorder):
    result = engine.pass1.run([face("f1", unit({0: 1.0})), face("f2", unit({0: 0.5, 1: 0.866}))])

    assert engine.store.cluster_of("f2") is None
    deferred = result.deferred[0]
    assert deferred.face_id == "f2"
    assert deferred.reason == REASON_UNCERTAIN
    assert deferred.candidate_cluster_id == engine.store.cluster_of("f1")
    assert abs(deferred.candidate_similarity - 0.5) < 1e-3
    assert [e.face_id for e in recorder.of_kind(EventKind.DEFERRED)] == ["f2"]


def test_no_commit_without_evidence_gap(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    seed_cluster(engine.store, "B", [face("b", unit({1: 1.0}))])

    result = engine.pass1.run([face("x", unit({0: 0.70, 1: 0.65, 2: 0.2958}))])

    assert engine.store.cluster_of("x") is None
    assert result.deferred[0].reason == REASON_INSUFFICIENT_GAP
    assert engine.store.member_count("A") == 1
    assert engine.store.member_count("B") == 1


def test_matching_uses_anchors_not_members(engine):
    member = face("m", unit({1: 1.0}), quality=55.0)
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0})), member], anchored=["a"])

    engine.pass1.run([face("x", unit({1: 1.0}))])

    assert engine.store.cluster_of("x") not in (None, "A")


def test_invalid_embeddings_are_rejected(engine, recorder):
    broken = unit({0: 1.0}).copy()
    broken[3] = np.nan
    faces = [
        face("nan", broken),
        face("short", unit({0: 1.0}, dim=100)),
        face("zero", np.zeros(512, dtype=np.float32)),
    ]

    result = engine.pass1.run(faces)

    assert set(result.rejected) == {"nan", "short", "zero"}
    assert all(reason.startswith("invalid_embedding") for reason in result.rejected.values())
    assert not engine.store.has_face("nan")
    assert len(recorder.of_kind(EventKind.REJECTED)) == 3


def test_low_quality_faces_are_kept_out_of_clusters(engine):
    result = engine.pass1.run(
        [
            face("display", unit({0: 1.0}), quality=40.0),
            face("junk", unit({0: 1.0}), quality=10.0),
        ]
    )

    assert result.display_only == ["display"]
    assert result.rejected == {"junk": "low_quality"}
    assert engine.store.has_face("display")
    assert engine.store.cluster_of("display") is None
    assert engine.store.clusters() == []


def test_already_assigned_faces_are_skipped(engine):
    first = face("f1", unit({0: 1.0}))
    engine.pass1.run([first])

    result = engine.pass1.run([first])

    assert result.skipped == ["f1"]
    assert len(engine.store.clusters()) == 1


def test_mobilefacenet_source_uses_its_own_dimension(engine):
    a = face("m1", unit({0: 1.0}, dim=192), source=EmbeddingSource.MOBILEFACENET_192)
    b = face("m2", unit({0: 0.6, 1: 0.8}, dim=192), source=EmbeddingSource.MOBILEFACENET_192)
    c = face("n1", unit({0: 1.0}))

    result = engine.pass1.run([a, b, c])

    # 0.60 is SAFE_SAME for MobileFaceNet (0.58) and the 512-dim face never sees 192-dim anchors
    assert engine.store.cluster_of("m2") == engine.store.cluster_of("m1")
    assert engine.store.cluster_of("n1") != engine.store.cluster_of("m1")
    assert len(result.created) == 2
    assert result.summary()["assigned"] == 3
