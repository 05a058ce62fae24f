import pytest

from facegroups.clustering.pass2 import (
    PATH_HIGH,
    PATH_MULTI,
    REASON_AMBIGUOUS,
    REASON_BELOW_THRESHOLD,
    REASON_NO_ANCHOR,
    Pass2Resolver,
)
from facegroups.config import ClusteringConfig
from facegroups.events import EventKind
from facegroups.recognition.statistics import refresh_cluster
from facegroups.types import AnchorMatch, DeferredFace, EmbeddingSource, PoseCategory, QualityTier

from conftest import face, seed_cluster, unit


def _defer(engine, item, tier=QualityTier.CLUSTERING):
    with engine.store.transaction() as txn:
        txn.put_face(item, tier)
    return DeferredFace(face=item, tier=tier, reason="uncertain")


def test_high_similarity_path_commits_without_promotion(engine, recorder):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    item = _defer(engine, face("x", unit({0: 0.55, 1: 0.83516})), tier=QualityTier.ANCHOR)

    result = engine.pass2.run([item], [item.face])

    assert result.resolved == {"x": "A"}
    assert result.paths == {"x": PATH_HIGH}
    assert [a.face_id for a in engine.store.anchors("A")] == ["a"]
    assigned = recorder.of_kind(EventKind.ASSIGNED)
    assert assigned[0].details["pass_number"] == 2


def _spread_cluster(engine):
    # two orthogonal anchors: mean similarity 0.0, so the adaptive threshold sits at the 0.45 floor
    seed_cluster(engine.store, "A", [face("a1", unit({0: 1.0})), face("a2", unit({1: 1.0}))])
    refresh_cluster(engine.store, "A", engine.config)
    assert engine.store.get_statistics("A").acceptance_threshold == pytest.approx(0.45)


def test_multi_anchor_path_counts_supporting_anchors(engine):
    _spread_cluster(engine)
    item = _defer(engine, face("x", unit({0: 0.47, 1: 0.47, 2: 0.74713})))

    result = engine.pass2.run([item], [item.face])

    assert result.resolved == {"x": "A"}
    assert result.paths == {"x": PATH_MULTI}


def test_multi_anchor_path_respects_required_support(engine):
    _spread_cluster(engine)
    strict = ClusteringConfig(min_supporting_anchors=3)
    resolver = Pass2Resolver(engine.store, engine.index, engine.mutations, engine.enforcer, strict)
    item = _defer(engine, face("x", unit({0: 0.47, 1: 0.47, 2: 0.74713})))

    result = resolver.run([item], [item.face])

    assert result.resolved == {}
    assert result.unresolved[0].reason == REASON_BELOW_THRESHOLD
    assert engine.store.cluster_of("x") is None


def test_worked_example_leaves_same_photo_face_unassigned(engine, recorder):
    f1 = face("F1", unit({0: 1.0}), photo_uri="p1.jpg")
    f2 = face("F2", unit({0: 0.71, 1: 0.70412}), photo_uri="p2.jpg")
    f3 = face("F3", unit({0: 0.40, 1: 0.16474, 2: 0.9016}), photo_uri="p2.jpg")

    report = engine.start_scan([f1, f2, f3])

    c1 = engine.store.cluster_of("F1")
    assert engine.store.cluster_of("F2") == c1
    assert len(engine.store.anchors(c1)) == 2
    assert [d.face_id for d in report.pass1.deferred] == ["F3"]
    # the same-photo boost lifts 0.40 to 0.45: under 0.50 and under the cluster's 0.65 threshold
    assert engine.store.get_statistics(c1).acceptance_threshold == pytest.approx(0.65)
    assert engine.store.cluster_of("F3") is None
    assert report.pass2.resolved == {}
    assert report.pass2.unresolved[0].reason == REASON_BELOW_THRESHOLD
    assert not any(e.face_id == "F3" for e in recorder.of_kind(EventKind.ASSIGNED))


def test_pass2_never_founds_clusters(engine):
    item = _defer(engine, face("x", unit({0: 1.0})), tier=QualityTier.ANCHOR)

    result = engine.pass2.run([item], [item.face])

    assert engine.store.clusters() == []
    assert result.unresolved[0].reason == REASON_NO_ANCHOR


def test_ambiguous_candidates_stay_unassigned(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    seed_cluster(engine.store, "B", [face("b", unit({1: 1.0}))])
    item = _defer(engine, face("x", unit({0: 0.55, 1: 0.52, 2: 0.65276})))

    result = engine.pass2.run([item], [item.face])

    assert result.unresolved[0].reason == REASON_AMBIGUOUS
    assert engine.store.cluster_of("x") is None


def test_session_hint_can_decide_between_passes(engine):
    a = face("a", unit({0: 1.0}), photo_uri="p1.jpg", photo_timestamp=1_000)
    seed_cluster(engine.store, "A", [a])
    item = _defer(engine, face("x", unit({0: 0.47, 1: 0.88252}), photo_uri="p2.jpg", photo_timestamp=600_000))

    result = engine.pass2.run([item], [a, item.face])

    # 0.47 alone misses the 0.50 high path; the session boost makes it 0.52
    assert result.resolved == {"x": "A"}
    assert result.paths == {"x": PATH_HIGH}
    assert len(result.sessions) == 1


def test_pose_bridges_are_published_as_suggestions(engine, recorder):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    seed_cluster(engine.store, "B", [face("b", unit({0: 0.7, 1: 0.71414}))])

    result = engine.pass2.run([], [])

    assert len(result.bridges) == 1
    suggested = recorder.of_kind(EventKind.MERGE_SUGGESTED)
    assert {suggested[0].cluster_id, suggested[0].other_cluster_id} == {"A", "B"}
    assert engine.store.cluster_of("b") == "B"


def test_gap_of_exactly_min_evidence_is_not_ambiguous(engine):
    item = _defer(engine, face("x", unit({0: 1.0})))
    decision = engine.model.decide(
        [
            AnchorMatch("A", "a-1", 0.72, PoseCategory.FRONTAL, 80.0),
            AnchorMatch("B", "b-1", 0.62, PoseCategory.FRONTAL, 80.0),
        ],
        EmbeddingSource.FACENET_512,
    )

    assert engine.pass2._evaluate(item, decision) == PATH_HIGH
