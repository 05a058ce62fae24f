import pytest

from facegroups.recognition.anchor_index import AnchorIndexSnapshot
from facegroups.recognition.bridges import bridge_confidence, find_pose_bridges, pose_compatibility_bonus
from facegroups.types import PoseCategory

from conftest import anchor, unit

P = PoseCategory


@pytest.mark.parametrize(
    "pose_a, pose_b, bonus",
    [
        (P.FRONTAL, P.FRONTAL, 0.15),
        (P.PROFILE_LEFT, P.PROFILE_LEFT, 0.15),
        (P.FRONTAL, P.SLIGHT_LEFT, 0.12),
        (P.SLIGHT_RIGHT, P.FRONTAL, 0.12),
        (P.SLIGHT_LEFT, P.PROFILE_LEFT, 0.08),
        (P.PROFILE_RIGHT, P.SLIGHT_RIGHT, 0.08),
        (P.SLIGHT_LEFT, P.PROFILE_RIGHT, 0.03),
        (P.FRONTAL, P.PROFILE_LEFT, 0.03),
        (P.SLIGHT_LEFT, P.SLIGHT_RIGHT, 0.03),
    ],
)
def test_pose_compatibility_bonus(pose_a, pose_b, bonus):
    assert pose_compatibility_bonus(pose_a, pose_b) == pytest.approx(bonus)


def test_confidence_is_capped_at_one():
    assert bridge_confidence(0.95, P.FRONTAL, P.FRONTAL) == pytest.approx(1.0)


def test_best_bridge_per_cluster_pair():
    anchors = [
        anchor("a-front", "A", unit({0: 1.0}), pose=P.FRONTAL),
        anchor("a-side", "A", unit({0: 0.7, 1: 0.71414}), pose=P.SLIGHT_LEFT),
        anchor("b-side", "B", unit({0: 0.7, 1: 0.71414}), pose=P.SLIGHT_LEFT),
        anchor("c-far", "C", unit({5: 1.0})),
    ]
    snapshot = AnchorIndexSnapshot(version=1, anchors=anchors, max_per_cluster=7)

    bridges = find_pose_bridges(snapshot)

    assert len(bridges) == 1
    bridge = bridges[0]
    assert (bridge.cluster_id_a, bridge.cluster_id_b) == ("A", "B")
    assert (bridge.anchor_id_a, bridge.anchor_id_b) == ("a-side", "b-side")
    assert bridge.confidence == pytest.approx(1.0)


def test_weak_bridges_are_candidates_but_not_suggestions():
    anchors = [
        anchor("a", "A", unit({0: 1.0}), pose=P.FRONTAL),
        anchor("b", "B", unit({0: 0.57, 1: 0.82164}), pose=P.PROFILE_RIGHT),
    ]
    snapshot = AnchorIndexSnapshot(version=1, anchors=anchors, max_per_cluster=7)

    assert find_pose_bridges(snapshot) == []
    candidates = find_pose_bridges(snapshot, suggestions_only=False)
    assert len(candidates) == 1
    assert candidates[0].confidence == pytest.approx(0.60, abs=1e-4)
    assert not candidates[0].is_likely_same_person()
