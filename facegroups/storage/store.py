"""Authoritative in-memory cluster state with all-or-nothing transactions."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Protocol, Set, Tuple

from facegroups.errors import StorageUnavailableError
from facegroups.types import (
    ClusterAnchor,
    ClusteringConstraint,
    ClusterStatistics,
    DetectedFace,
    PersonCluster,
    QualityTier,
)

if TYPE_CHECKING:  # pragma: no cover
    from facegroups.history.mutations import ClusterHistory

LOGGER = logging.getLogger("facegroups.storage.store")

TABLES = (
    "faces",
    "assignments",
    "clusters",
    "anchors",
    "anchor_matches",
    "anchor_means",
    "statistics",
    "constraints",
    "history",
)


@dataclass(frozen=True)
class StoredFace:
    face: DetectedFace
    tier: QualityTier

    @property
    def face_id(self) -> str:
        return self.face.face_id


@dataclass(frozen=True)
class StoreOp:
    """One upsert (or delete, when ``value`` is None) against a store table."""

    table: str
    key: str
    value: Any = None


class StoreSink(Protocol):
    def write(self, ops: List[StoreOp]) -> None:
        ...


@dataclass
class ConsistencyReport:
    orphan_anchors: List[str] = field(default_factory=list)
    dangling_assignments: List[str] = field(default_factory=list)
    orphan_constraints: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.orphan_anchors or self.dangling_assignments or self.orphan_constraints)


class Transaction:
    """Staged operation set; nothing is visible until the surrounding block exits cleanly."""

    def __init__(self) -> None:
        self.ops: List[StoreOp] = []

    def _stage(self, table: str, key: str, value: Any = None) -> None:
        self.ops.append(StoreOp(table, key, value))

    def put_face(self, face: DetectedFace, tier: QualityTier) -> None:
        self._stage("faces", face.face_id, StoredFace(face, tier))

    def assign(self, face_id: str, cluster_id: Optional[str]) -> None:
        self._stage("assignments", face_id, cluster_id)

    def put_cluster(self, cluster: PersonCluster) -> None:
        self._stage("clusters", cluster.cluster_id, replace(cluster))

    def drop_cluster(self, cluster_id: str) -> None:
        self._stage("clusters", cluster_id, None)

    def put_anchor(self, anchor: ClusterAnchor) -> None:
        self._stage("anchors", anchor.anchor_id, replace(anchor))

    def drop_anchor(self, anchor_id: str) -> None:
        self._stage("anchors", anchor_id, None)

    def record_anchor_match(self, anchor_id: str, match_count: int, matched_at: int) -> None:
        self._stage("anchor_matches", anchor_id, (int(match_count), int(matched_at)))

    def set_anchor_mean(self, anchor_id: str, value: float) -> None:
        self._stage("anchor_means", anchor_id, float(value))

    def put_statistics(self, stats: ClusterStatistics) -> None:
        self._stage("statistics", stats.cluster_id, replace(stats))

    def drop_statistics(self, cluster_id: str) -> None:
        self._stage("statistics", cluster_id, None)

    def put_constraint(self, constraint: ClusteringConstraint) -> None:
        self._stage("constraints", constraint.constraint_id, replace(constraint))

    def drop_constraint(self, constraint_id: str) -> None:
        self._stage("constraints", constraint_id, None)

    def put_history(self, entry: "ClusterHistory") -> None:
        self._stage("history", entry.history_id, replace(entry))

    def drop_history(self, history_id: str) -> None:
        self._stage("history", history_id, None)


class ClusterStore:
    """Holds faces, clusters, anchors, statistics, constraints and history.

    Writes go through :meth:`transaction`. The staged operations are handed to
    the sink first; only when the sink accepts them are they applied here, so
    a failing sink leaves memory exactly as it was.
    """

    def __init__(self, sink: Optional[StoreSink] = None) -> None:
        self.sink = sink
        self._lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._cluster_locks: Dict[str, threading.Lock] = {}
        self._faces: Dict[str, StoredFace] = {}
        self._assignments: Dict[str, str] = {}
        self._members: Dict[str, Set[str]] = {}
        self._clusters: Dict[str, PersonCluster] = {}
        self._anchors: Dict[str, ClusterAnchor] = {}
        self._statistics: Dict[str, ClusterStatistics] = {}
        self._constraints: Dict[str, ClusteringConstraint] = {}
        self._history: Dict[str, "ClusterHistory"] = {}
        self._anchor_version = 0
        self._dirty: Set[str] = set()

    # ------------------------------------------------------------------ writes
    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        with self._lock:
            tx = Transaction()
            yield tx
            self.commit(tx.ops)

    def commit(self, ops: List[StoreOp]) -> None:
        if not ops:
            return
        with self._lock:
            if self.sink is not None:
                try:
                    self.sink.write(ops)
                except StorageUnavailableError:
                    raise
                except OSError as exc:
                    raise StorageUnavailableError(f"Store sink failed: {exc}") from exc
            self.apply(ops)

    def apply(self, ops: Iterable[StoreOp]) -> None:
        """Apply operations without involving the sink (used for journal replay)."""
        with self._lock:
            for op in ops:
                self._apply_one(op)

    def _apply_one(self, op: StoreOp) -> None:
        table, key, value = op.table, op.key, op.value
        if table == "faces":
            if value is None:
                self._faces.pop(key, None)
                self._unassign(key)
            else:
                self._faces[key] = value
        elif table == "assignments":
            self._unassign(key)
            if value is not None:
                self._assignments[key] = value
                self._members.setdefault(value, set()).add(key)
        elif table == "clusters":
            previous = self._clusters.get(key)
            if value is None:
                self._clusters.pop(key, None)
            else:
                self._clusters[key] = replace(value)
            was_live = previous is not None and not previous.is_deleted
            is_live = value is not None and not value.is_deleted
            if was_live != is_live:
                self._anchor_version += 1
                self._dirty.add(key)
        elif table == "anchors":
            previous = self._anchors.get(key)
            if previous is not None:
                self._dirty.add(previous.cluster_id)
            if value is None:
                self._anchors.pop(key, None)
            else:
                self._anchors[key] = replace(value)
                self._dirty.add(value.cluster_id)
            self._anchor_version += 1
        elif table == "anchor_matches":
            anchor = self._anchors.get(key)
            if anchor is not None:
                anchor.match_count, anchor.last_matched_at = int(value[0]), int(value[1])
        elif table == "anchor_means":
            anchor = self._anchors.get(key)
            if anchor is not None:
                anchor.intra_cluster_mean_similarity = float(value)
        elif table == "statistics":
            if value is None:
                self._statistics.pop(key, None)
            else:
                self._statistics[key] = replace(value)
        elif table == "constraints":
            if value is None:
                self._constraints.pop(key, None)
            else:
                self._constraints[key] = replace(value)
        elif table == "history":
            if value is None:
                self._history.pop(key, None)
            else:
                self._history[key] = replace(value)
        else:
            raise ValueError(f"Unknown store table: {table}")

    def _unassign(self, face_id: str) -> None:
        previous = self._assignments.pop(face_id, None)
        if previous is not None:
            members = self._members.get(previous)
            if members is not None:
                members.discard(face_id)
                if not members:
                    self._members.pop(previous, None)

    # ------------------------------------------------------------------ locks
    def cluster_lock(self, cluster_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._cluster_locks.get(cluster_id)
            if lock is None:
                lock = threading.Lock()
                self._cluster_locks[cluster_id] = lock
            return lock

    @contextmanager
    def locked_clusters(self, cluster_ids: Iterable[Optional[str]]) -> Iterator[None]:
        """Hold the per-cluster locks of every id, acquired in sorted order."""
        ordered = sorted({cid for cid in cluster_ids if cid})
        acquired: List[threading.Lock] = []
        try:
            for cluster_id in ordered:
                lock = self.cluster_lock(cluster_id)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # ------------------------------------------------------------------ reads
    @property
    def anchor_version(self) -> int:
        with self._lock:
            return self._anchor_version

    def has_face(self, face_id: str) -> bool:
        with self._lock:
            return face_id in self._faces

    def get_face(self, face_id: str) -> Optional[StoredFace]:
        with self._lock:
            return self._faces.get(face_id)

    def require_face(self, face_id: str) -> StoredFace:
        stored = self.get_face(face_id)
        if stored is None:
            raise KeyError(f"Unknown face: {face_id}")
        return stored

    def faces(self) -> List[StoredFace]:
        with self._lock:
            return list(self._faces.values())

    def cluster_of(self, face_id: str) -> Optional[str]:
        with self._lock:
            return self._assignments.get(face_id)

    def assignments(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._assignments)

    def members(self, cluster_id: str) -> List[str]:
        with self._lock:
            return sorted(self._members.get(cluster_id, ()))

    def member_count(self, cluster_id: str) -> int:
        with self._lock:
            return len(self._members.get(cluster_id, ()))

    def get_cluster(self, cluster_id: str) -> Optional[PersonCluster]:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            return replace(cluster) if cluster is not None else None

    def require_cluster(self, cluster_id: str) -> PersonCluster:
        cluster = self.get_cluster(cluster_id)
        if cluster is None or cluster.is_deleted:
            raise KeyError(f"Unknown cluster: {cluster_id}")
        return cluster

    def is_live(self, cluster_id: Optional[str]) -> bool:
        if cluster_id is None:
            return False
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            return cluster is not None and not cluster.is_deleted

    def clusters(self, include_deleted: bool = False) -> List[PersonCluster]:
        with self._lock:
            return [
                replace(c)
                for c in self._clusters.values()
                if include_deleted or not c.is_deleted
            ]

    def get_anchor(self, anchor_id: str) -> Optional[ClusterAnchor]:
        with self._lock:
            anchor = self._anchors.get(anchor_id)
            return replace(anchor) if anchor is not None else None

    def anchor_for_face(self, face_id: str) -> Optional[ClusterAnchor]:
        """The face's active anchor, else the most recent inactive one it left behind."""
        with self._lock:
            found = None
            for anchor in self._anchors.values():
                if anchor.face_id != face_id:
                    continue
                if anchor.is_active:
                    return replace(anchor)
                if found is None or anchor.created_at >= found.created_at:
                    found = anchor
            return replace(found) if found is not None else None

    def anchors(self, cluster_id: Optional[str] = None, active_only: bool = True) -> List[ClusterAnchor]:
        """Anchors usable for matching: active and owned by a live cluster."""
        with self._lock:
            result = []
            for anchor in self._anchors.values():
                if cluster_id is not None and anchor.cluster_id != cluster_id:
                    continue
                if active_only and not (anchor.is_active and self._is_live_locked(anchor.cluster_id)):
                    continue
                result.append(replace(anchor))
            return result

    def all_anchors(self) -> List[ClusterAnchor]:
        with self._lock:
            return [replace(a) for a in self._anchors.values()]

    def matching_view(self) -> Tuple[int, List[ClusterAnchor]]:
        with self._lock:
            return self._anchor_version, self.anchors()

    def _is_live_locked(self, cluster_id: str) -> bool:
        cluster = self._clusters.get(cluster_id)
        return cluster is not None and not cluster.is_deleted

    def get_statistics(self, cluster_id: str) -> Optional[ClusterStatistics]:
        with self._lock:
            stats = self._statistics.get(cluster_id)
            return replace(stats) if stats is not None else None

    def statistics(self) -> List[ClusterStatistics]:
        with self._lock:
            return [replace(s) for s in self._statistics.values()]

    def constraints(self) -> List[ClusteringConstraint]:
        with self._lock:
            return [replace(c) for c in self._constraints.values()]

    def get_history(self, history_id: str) -> Optional["ClusterHistory"]:
        with self._lock:
            entry = self._history.get(history_id)
            return replace(entry) if entry is not None else None

    def history(self) -> List["ClusterHistory"]:
        with self._lock:
            entries = [replace(h) for h in self._history.values()]
        entries.sort(key=lambda h: (h.timestamp, h.sequence))
        return entries

    def pop_dirty_clusters(self) -> Set[str]:
        with self._lock:
            dirty, self._dirty = self._dirty, set()
            return dirty

    def mark_dirty(self, cluster_ids: Iterable[str]) -> None:
        with self._lock:
            self._dirty.update(cluster_ids)

    def check_consistency(self) -> ConsistencyReport:
        """Report records pointing at missing or deleted clusters and unknown faces.

        Offending anchors are already excluded from matching; nothing is repaired here.
        """
        report = ConsistencyReport()
        with self._lock:
            for anchor in self._anchors.values():
                if anchor.is_active and not self._is_live_locked(anchor.cluster_id):
                    report.orphan_anchors.append(anchor.anchor_id)
            for face_id, cluster_id in self._assignments.items():
                if not self._is_live_locked(cluster_id):
                    report.dangling_assignments.append(face_id)
            for constraint in self._constraints.values():
                if constraint.face_id1 not in self._faces or constraint.face_id2 not in self._faces:
                    report.orphan_constraints.append(constraint.constraint_id)
        for anchor_id in report.orphan_anchors:
            LOGGER.warning("Anchor %s references a missing or deleted cluster; treated as inactive", anchor_id)
        for face_id in report.dangling_assignments:
            LOGGER.warning("Face %s is assigned to a missing or deleted cluster", face_id)
        for constraint_id in report.orphan_constraints:
            LOGGER.warning("Constraint %s references an unknown face; ignored", constraint_id)
        return report
