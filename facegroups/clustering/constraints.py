"""User and system declared must-link / cannot-link constraints."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Iterable, List, Optional, Set, Tuple

from facegroups.storage.store import ClusterStore
from facegroups.types import ClusteringConstraint, ConstraintType

LOGGER = logging.getLogger("facegroups.clustering.constraints")


class ConstraintEnforcer:
    """Answers constraint questions for both passes and for user operations.

    Constraints pointing at faces the store does not know are skipped (and
    logged once); they start applying as soon as both faces exist.
    """

    def __init__(
        self,
        store: ClusterStore,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._reported: Set[str] = set()

    # ------------------------------------------------------------------ bookkeeping
    def add_constraint(
        self,
        constraint_type: ConstraintType,
        face_id1: str,
        face_id2: str,
        created_by: str = "user",
    ) -> ClusteringConstraint:
        """Declare a constraint, replacing any earlier one on the same pair."""
        constraint_type = ConstraintType(constraint_type)
        if face_id1 == face_id2:
            raise ValueError("A constraint needs two different faces")
        for face_id in (face_id1, face_id2):
            self.store.require_face(face_id)
        constraint = ClusteringConstraint(
            constraint_id=self.id_factory(),
            constraint_type=constraint_type,
            face_id1=face_id1,
            face_id2=face_id2,
            created_at=self.clock(),
            created_by=created_by,
        )
        replaced = [c for c in self.store.constraints() if c.pair_key == constraint.pair_key]
        with self.store.transaction() as txn:
            for old in replaced:
                txn.drop_constraint(old.constraint_id)
            txn.put_constraint(constraint)
        if replaced:
            LOGGER.info("Replaced constraint on %s/%s with %s", face_id1, face_id2, constraint_type.value)
        else:
            LOGGER.info("Added %s constraint %s/%s", constraint_type.value, face_id1, face_id2)

        if constraint_type is ConstraintType.CANNOT_LINK:
            c1, c2 = self.store.cluster_of(face_id1), self.store.cluster_of(face_id2)
            if c1 is not None and c1 == c2:
                LOGGER.warning(
                    "Faces %s and %s already share cluster %s; split them to honour the constraint",
                    face_id1,
                    face_id2,
                    c1,
                )
        return constraint

    def remove_constraint(self, constraint_id: str) -> ClusteringConstraint:
        for constraint in self.store.constraints():
            if constraint.constraint_id == constraint_id:
                with self.store.transaction() as txn:
                    txn.drop_constraint(constraint_id)
                LOGGER.info("Removed constraint %s", constraint_id)
                return constraint
        raise KeyError(f"Unknown constraint: {constraint_id}")

    def active_constraints(self) -> List[ClusteringConstraint]:
        active = []
        for constraint in self.store.constraints():
            if self.store.has_face(constraint.face_id1) and self.store.has_face(constraint.face_id2):
                active.append(constraint)
            elif constraint.constraint_id not in self._reported:
                self._reported.add(constraint.constraint_id)
                LOGGER.warning("Ignoring constraint %s: references an unknown face", constraint.constraint_id)
        return active

    def constraints_for(self, face_id: str) -> List[ClusteringConstraint]:
        return [c for c in self.active_constraints() if c.involves(face_id)]

    def _partners(self, face_id: str, constraint_type: ConstraintType) -> Set[str]:
        return {
            c.partner_of(face_id)
            for c in self.constraints_for(face_id)
            if c.constraint_type is constraint_type
        }

    def cannot_link_partners(self, face_id: str) -> Set[str]:
        return self._partners(face_id, ConstraintType.CANNOT_LINK)

    def must_link_partners(self, face_id: str) -> Set[str]:
        return self._partners(face_id, ConstraintType.MUST_LINK)

    # ------------------------------------------------------------------ decisions
    def vetoed_clusters(self, face_id: str) -> Set[str]:
        """Clusters holding a CANNOT_LINK partner of ``face_id``."""
        vetoed = set()
        for partner in self.cannot_link_partners(face_id):
            cluster_id = self.store.cluster_of(partner)
            if cluster_id is not None:
                vetoed.add(cluster_id)
        return vetoed

    def must_link_target(self, face_id: str) -> Tuple[Optional[str], bool]:
        """Return ``(cluster_id, conflict)`` dictated by MUST_LINK partners.

        ``cluster_id`` is None when no partner sits in a live cluster. ``conflict``
        is True when partners are spread over several clusters or the only
        candidate cluster is vetoed by a CANNOT_LINK.
        """
        targets = set()
        for partner in self.must_link_partners(face_id):
            cluster_id = self.store.cluster_of(partner)
            if cluster_id is not None and self.store.is_live(cluster_id):
                targets.add(cluster_id)
        if not targets:
            return None, False
        if len(targets) > 1:
            return None, True
        target = targets.pop()
        if target in self.vetoed_clusters(face_id):
            return None, True
        return target, False

    def cannot_link_violations(self, face_ids: Iterable[str], cluster_id: str) -> List[ClusteringConstraint]:
        """CANNOT_LINK constraints broken if ``face_ids`` joined ``cluster_id``."""
        moving = set(face_ids)
        members = set(self.store.members(cluster_id)) - moving
        violations = []
        for constraint in self.active_constraints():
            if constraint.constraint_type is not ConstraintType.CANNOT_LINK:
                continue
            a, b = constraint.face_id1, constraint.face_id2
            if (a in moving and b in members) or (b in moving and a in members):
                violations.append(constraint)
        return violations

    def cannot_link_within(self, face_ids: Iterable[str]) -> List[ClusteringConstraint]:
        pool = set(face_ids)
        return [
            c
            for c in self.active_constraints()
            if c.constraint_type is ConstraintType.CANNOT_LINK and c.face_id1 in pool and c.face_id2 in pool
        ]

    def allows_merge(self, cluster_a: str, cluster_b: str) -> bool:
        members_a = set(self.store.members(cluster_a))
        members_b = set(self.store.members(cluster_b))
        for constraint in self.active_constraints():
            if constraint.constraint_type is not ConstraintType.CANNOT_LINK:
                continue
            a, b = constraint.face_id1, constraint.face_id2
            if (a in members_a and b in members_b) or (a in members_b and b in members_a):
                return False
        return True
