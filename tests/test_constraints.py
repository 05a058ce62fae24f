import pytest

from facegroups.errors import ConstraintViolationError
from facegroups.events import EventKind
from facegroups.types import ClusteringConstraint, ConstraintType, QualityTier

from conftest import face, seed_cluster, unit


def _store_face(engine, item, tier=QualityTier.ANCHOR):
    with engine.store.transaction() as txn:
        txn.put_face(item, tier)
    return item


def test_add_constraint_validates_faces(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])

    with pytest.raises(ValueError):
        engine.add_constraint(ConstraintType.CANNOT_LINK, "a", "a")
    with pytest.raises(KeyError):
        engine.add_constraint(ConstraintType.CANNOT_LINK, "a", "ghost")


def test_new_constraint_replaces_the_old_one_on_the_same_pair(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    seed_cluster(engine.store, "B", [face("b", unit({1: 1.0}))])

    engine.add_constraint(ConstraintType.MUST_LINK, "a", "b")
    latest = engine.add_constraint(ConstraintType.CANNOT_LINK, "b", "a")

    constraints = engine.store.constraints()
    assert [c.constraint_id for c in constraints] == [latest.constraint_id]
    assert constraints[0].constraint_type is ConstraintType.CANNOT_LINK


def test_remove_unknown_constraint_raises(engine):
    with pytest.raises(KeyError):
        engine.remove_constraint("nope")


def test_cannot_link_beats_similarity(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    twin = _store_face(engine, face("twin", unit({0: 0.99, 1: 0.14107})))
    engine.add_constraint(ConstraintType.CANNOT_LINK, "a", "twin")

    engine.pass1.run([twin])

    assert engine.store.cluster_of("twin") not in (None, "A")


def test_must_link_forces_assignment(engine, recorder):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    partner = _store_face(engine, face("partner", unit({5: 1.0})))
    engine.add_constraint(ConstraintType.MUST_LINK, "a", "partner")

    engine.pass1.run([partner])

    assert engine.store.cluster_of("partner") == "A"
    assigned = recorder.of_kind(EventKind.ASSIGNED)
    assert assigned[-1].details["forced"] is True


def test_conflicting_must_links_defer_the_face(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    seed_cluster(engine.store, "B", [face("b", unit({1: 1.0}))])
    torn = _store_face(engine, face("torn", unit({0: 1.0})))
    engine.add_constraint(ConstraintType.MUST_LINK, "torn", "a")
    engine.add_constraint(ConstraintType.MUST_LINK, "torn", "b")

    result = engine.pass1.run([torn])

    assert engine.store.cluster_of("torn") is None
    assert result.deferred[0].reason == "constraint_conflict"


def test_user_move_cannot_break_cannot_link(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    seed_cluster(engine.store, "B", [face("b", unit({1: 1.0})), face("b2", unit({1: 1.0}))])
    engine.add_constraint(ConstraintType.CANNOT_LINK, "a", "b")

    with pytest.raises(ConstraintViolationError):
        engine.move_face("b", "A")
    with pytest.raises(ConstraintViolationError):
        engine.merge_clusters(["A", "B"])

    assert engine.store.cluster_of("b") == "B"
    assert engine.store.is_live("A") and engine.store.is_live("B")
    engine.move_face("b2", "A")
    assert engine.store.cluster_of("b2") == "A"


def test_constraints_on_unknown_faces_are_ignored(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    with engine.store.transaction() as txn:
        txn.put_constraint(ClusteringConstraint("c-ghost", ConstraintType.CANNOT_LINK, "a", "ghost"))

    assert engine.enforcer.active_constraints() == []
    assert engine.enforcer.cannot_link_partners("a") == set()
    assert engine.check_consistency().orphan_constraints == ["c-ghost"]


def test_bridges_skip_cluster_pairs_with_cannot_link(engine):
    seed_cluster(engine.store, "A", [face("a", unit({0: 1.0}))])
    seed_cluster(engine.store, "B", [face("b", unit({0: 0.8, 1: 0.6}))])
    assert len(engine.pose_bridges()) == 1

    engine.add_constraint(ConstraintType.CANNOT_LINK, "a", "b")

    assert engine.pose_bridges() == []
    assert not engine.enforcer.allows_merge("A", "B")
