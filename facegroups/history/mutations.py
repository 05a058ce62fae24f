"""Structural cluster operations, their history entries and exact reversal."""

from __future__ import annotations

import itertools
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from facegroups.config import ClusteringConfig
from facegroups.errors import ConstraintViolationError
from facegroups.storage.store import ClusterStore, Transaction
from facegroups.types import ClusterAnchor, DetectedFace, OperationType, PersonCluster

LOGGER = logging.getLogger("facegroups.history.mutations")

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class CreatePayload:
    cluster_id: str
    face_id: str
    anchor_id: str
    reactivated_from_cluster_id: Optional[str] = None


@dataclass(frozen=True)
class MergePayload:
    target_id: str
    source_ids: Tuple[str, ...]
    moved_faces: Dict[str, str]  # face_id -> source cluster
    moved_anchors: Dict[str, str]  # anchor_id -> source cluster
    target_previous_name: Optional[str] = None
    target_previous_person_id: Optional[str] = None


@dataclass(frozen=True)
class SplitPayload:
    source_id: str
    new_cluster_id: str
    face_ids: Tuple[str, ...]
    anchor_ids: Tuple[str, ...]


@dataclass(frozen=True)
class MoveFacePayload:
    face_id: str
    from_cluster_id: Optional[str]
    to_cluster_id: str
    promoted_anchor_id: Optional[str] = None
    moved_anchor_id: Optional[str] = None
    reactivated_from_cluster_id: Optional[str] = None
    matched_anchor_id: Optional[str] = None
    previous_match_count: int = 0
    previous_last_matched_at: int = 0


@dataclass(frozen=True)
class DeletePayload:
    cluster_id: str
    face_ids: Tuple[str, ...]
    deactivated_anchor_ids: Tuple[str, ...]


@dataclass(frozen=True)
class RenamePayload:
    cluster_id: str
    previous_name: Optional[str]
    previous_person_id: Optional[str]
    new_name: Optional[str]
    new_person_id: Optional[str]


UndoPayload = Union[CreatePayload, MergePayload, SplitPayload, MoveFacePayload, DeletePayload, RenamePayload]

PAYLOAD_TYPES = {
    OperationType.CREATE: CreatePayload,
    OperationType.MERGE: MergePayload,
    OperationType.SPLIT: SplitPayload,
    OperationType.MOVE_FACE: MoveFacePayload,
    OperationType.DELETE: DeletePayload,
    OperationType.RENAME: RenamePayload,
}


def payload_to_dict(payload: UndoPayload) -> Dict[str, Any]:
    data = asdict(payload)
    for key, value in data.items():
        if isinstance(value, tuple):
            data[key] = list(value)
    return data


def payload_from_dict(operation: OperationType, data: Dict[str, Any]) -> UndoPayload:
    cls = PAYLOAD_TYPES[operation]
    kwargs = dict(data)
    for key in ("source_ids", "face_ids", "anchor_ids", "deactivated_anchor_ids"):
        if key in kwargs and kwargs[key] is not None:
            kwargs[key] = tuple(kwargs[key])
    return cls(**kwargs)


@dataclass
class ClusterHistory:
    history_id: str
    operation_type: OperationType
    timestamp: int
    cluster_id: str
    payload: UndoPayload
    source_cluster_id: Optional[str] = None
    face_id: Optional[str] = None
    previous_name: Optional[str] = None
    can_undo: bool = True
    expires_at: Optional[int] = None
    undone_at: Optional[int] = None
    actor: str = "user"
    sequence: int = 0

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_undoable(self, now: int) -> bool:
        return self.can_undo and self.undone_at is None and not self.is_expired(now)


@dataclass
class UndoResult:
    history_id: str
    applied: bool
    reason: Optional[str] = None
    operation_type: Optional[OperationType] = None
    restored_cluster_ids: List[str] = field(default_factory=list)


class StateChanged(Exception):
    """Raised internally when an undo precondition no longer holds."""


class MutationLog:
    """Performs every structural change and records how to reverse it.

    Each operation stages its history entry first and its effects after it in a
    single store transaction, so an operation and its audit record become
    visible together or not at all.
    """

    def __init__(
        self,
        store: ClusterStore,
        config: Optional[ClusteringConfig] = None,
        enforcer=None,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.config = config or ClusteringConfig()
        self.enforcer = enforcer
        self.clock = clock or now_ms
        self.id_factory = id_factory or new_id
        start = max((entry.sequence for entry in store.history()), default=0) + 1
        self._sequence = itertools.count(start)

    # ------------------------------------------------------------------ helpers
    @contextmanager
    def _transaction(self, tx: Optional[Transaction]) -> Iterator[Transaction]:
        if tx is not None:
            yield tx
            return
        with self.store.transaction() as own:
            yield own

    def _record(
        self,
        tx: Transaction,
        operation: OperationType,
        payload: UndoPayload,
        cluster_id: str,
        actor: str,
        source_cluster_id: Optional[str] = None,
        face_id: Optional[str] = None,
        previous_name: Optional[str] = None,
        can_undo: bool = True,
    ) -> ClusterHistory:
        now = self.clock()
        ttl = self.config.undo_ttl_ms
        entry = ClusterHistory(
            history_id=self.id_factory(),
            operation_type=operation,
            timestamp=now,
            cluster_id=cluster_id,
            payload=payload,
            source_cluster_id=source_cluster_id,
            face_id=face_id,
            previous_name=previous_name,
            can_undo=can_undo,
            expires_at=now + ttl if ttl is not None else None,
            actor=actor,
            sequence=next(self._sequence),
        )
        tx.put_history(entry)
        return entry

    def _new_anchor(self, face: DetectedFace, cluster_id: str) -> ClusterAnchor:
        return ClusterAnchor(
            anchor_id=self.id_factory(),
            cluster_id=cluster_id,
            face_id=face.face_id,
            embedding=face.embedding,
            quality_score=float(face.quality_score),
            sharpness_score=float(face.sharpness),
            eye_visibility_score=float(face.eye_visibility),
            pose_category=face.pose_category,
            yaw=float(face.yaw) if face.yaw is not None else 0.0,
            roll=float(face.roll) if face.roll is not None else 0.0,
            embedding_source=face.embedding_source,
            created_at=self.clock(),
        )

    def _check_cannot_link(self, face_ids: Sequence[str], cluster_id: str) -> None:
        if self.enforcer is None:
            return
        conflicts = self.enforcer.cannot_link_violations(face_ids, cluster_id)
        if conflicts:
            pairs = ", ".join(f"{c.face_id1}/{c.face_id2}" for c in conflicts)
            raise ConstraintViolationError(f"CANNOT_LINK constraint would be violated: {pairs}")

    def _live_cluster(self, cluster_id: str) -> PersonCluster:
        return self.store.require_cluster(cluster_id)

    def _reusable_anchor(self, face_id: str) -> Optional[ClusterAnchor]:
        """An inactive anchor the face left behind (e.g. in a deleted cluster)."""
        anchor = self.store.anchor_for_face(face_id)
        if anchor is not None and not anchor.is_active:
            return anchor
        return None

    # ------------------------------------------------------------------ operations
    def create_cluster(
        self,
        face: DetectedFace,
        actor: str = "auto",
        tx: Optional[Transaction] = None,
    ) -> ClusterHistory:
        """Found a new cluster with ``face`` as its sole anchor and member."""
        cluster_id = self.id_factory()
        now = self.clock()
        previous = self._reusable_anchor(face.face_id)
        if previous is not None:
            anchor = replace(previous, cluster_id=cluster_id, is_active=True)
        else:
            anchor = self._new_anchor(face, cluster_id)
        with self._transaction(tx) as txn:
            entry = self._record(
                txn,
                OperationType.CREATE,
                CreatePayload(
                    cluster_id=cluster_id,
                    face_id=face.face_id,
                    anchor_id=anchor.anchor_id,
                    reactivated_from_cluster_id=previous.cluster_id if previous is not None else None,
                ),
                cluster_id=cluster_id,
                actor=actor,
                face_id=face.face_id,
            )
            txn.put_cluster(PersonCluster(cluster_id=cluster_id, created_at=now, updated_at=now))
            txn.put_anchor(anchor)
            txn.assign(face.face_id, cluster_id)
        LOGGER.info("Created cluster %s from face %s", cluster_id, face.face_id)
        return entry

    def move_face(
        self,
        face_id: str,
        target_cluster_id: str,
        actor: str = "user",
        promote_face: Optional[DetectedFace] = None,
        matched_anchor_id: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> ClusterHistory:
        """Put a face into ``target_cluster_id``.

        Used both for automatic assignment of a new face (no source cluster) and
        for user moves. An active anchor owned by the face follows it to the
        target; ``promote_face`` turns the face into an anchor of the target,
        reactivating the inactive anchor it left behind if there is one.
        """
        self.store.require_face(face_id)
        target = self._live_cluster(target_cluster_id)
        source_id = self.store.cluster_of(face_id)
        if source_id == target_cluster_id:
            raise ValueError(f"Face {face_id} already belongs to cluster {target_cluster_id}")
        self._check_cannot_link([face_id], target_cluster_id)

        existing_anchor = self.store.anchor_for_face(face_id)
        moved_anchor_id = None
        promoted: Optional[ClusterAnchor] = None
        reactivated_from = None
        if existing_anchor is not None and existing_anchor.is_active:
            if existing_anchor.cluster_id == source_id:
                moved_anchor_id = existing_anchor.anchor_id
        elif promote_face is not None:
            if existing_anchor is not None:
                reactivated_from = existing_anchor.cluster_id
                promoted = replace(existing_anchor, cluster_id=target_cluster_id, is_active=True)
            else:
                promoted = self._new_anchor(promote_face, target_cluster_id)
        matched = self.store.get_anchor(matched_anchor_id) if matched_anchor_id is not None else None

        now = self.clock()
        with self._transaction(tx) as txn:
            entry = self._record(
                txn,
                OperationType.MOVE_FACE,
                MoveFacePayload(
                    face_id=face_id,
                    from_cluster_id=source_id,
                    to_cluster_id=target_cluster_id,
                    promoted_anchor_id=promoted.anchor_id if promoted else None,
                    moved_anchor_id=moved_anchor_id,
                    reactivated_from_cluster_id=reactivated_from,
                    matched_anchor_id=matched.anchor_id if matched is not None else None,
                    previous_match_count=matched.match_count if matched is not None else 0,
                    previous_last_matched_at=matched.last_matched_at if matched is not None else 0,
                ),
                cluster_id=target_cluster_id,
                actor=actor,
                source_cluster_id=source_id,
                face_id=face_id,
            )
            txn.assign(face_id, target_cluster_id)
            if moved_anchor_id is not None:
                txn.put_anchor(replace(existing_anchor, cluster_id=target_cluster_id))
            if promoted is not None:
                txn.put_anchor(promoted)
            if matched is not None:
                txn.record_anchor_match(matched.anchor_id, matched.match_count + 1, now)
            txn.put_cluster(replace(target, updated_at=now))
        LOGGER.debug("Moved face %s: %s -> %s (%s)", face_id, source_id, target_cluster_id, actor)
        return entry

    def merge_clusters(
        self,
        cluster_ids: Sequence[str],
        target_id: Optional[str] = None,
        actor: str = "user",
    ) -> ClusterHistory:
        """Fold every cluster into one target; the largest cluster is kept by default."""
        unique = list(dict.fromkeys(cluster_ids))
        if len(unique) < 2:
            raise ValueError("Merging needs at least two distinct clusters")
        clusters = {cid: self._live_cluster(cid) for cid in unique}
        if target_id is None:
            target_id = max(unique, key=lambda cid: (self.store.member_count(cid), -unique.index(cid)))
        elif target_id not in clusters:
            raise ValueError(f"Merge target {target_id} is not among the merged clusters")
        sources = [cid for cid in unique if cid != target_id]

        with self.store.locked_clusters(unique):
            moved_faces: Dict[str, str] = {}
            moved_anchors: Dict[str, str] = {}
            for source_id in sources:
                for face_id in self.store.members(source_id):
                    moved_faces[face_id] = source_id
                for anchor in self.store.anchors(source_id, active_only=False):
                    if anchor.is_active:
                        moved_anchors[anchor.anchor_id] = source_id
            self._check_cannot_link(list(moved_faces), target_id)
            if self.enforcer is not None:
                pending = list(moved_faces)
                conflicts = [
                    c for c in self.enforcer.cannot_link_within(pending) if moved_faces[c.face_id1] != moved_faces[c.face_id2]
                ]
                if conflicts:
                    raise ConstraintViolationError(
                        "CANNOT_LINK constraint would be violated: "
                        + ", ".join(f"{c.face_id1}/{c.face_id2}" for c in conflicts)
                    )

            target = clusters[target_id]
            name, person_id = target.name, target.person_id
            if name is None:
                for source_id in sources:
                    if clusters[source_id].name is not None:
                        name, person_id = clusters[source_id].name, clusters[source_id].person_id
                        break
            now = self.clock()
            with self.store.transaction() as txn:
                entry = self._record(
                    txn,
                    OperationType.MERGE,
                    MergePayload(
                        target_id=target_id,
                        source_ids=tuple(sources),
                        moved_faces=moved_faces,
                        moved_anchors=moved_anchors,
                        target_previous_name=target.name,
                        target_previous_person_id=target.person_id,
                    ),
                    cluster_id=target_id,
                    actor=actor,
                    source_cluster_id=sources[0],
                    previous_name=target.name,
                )
                for face_id in moved_faces:
                    txn.assign(face_id, target_id)
                for anchor_id in moved_anchors:
                    anchor = self.store.get_anchor(anchor_id)
                    txn.put_anchor(replace(anchor, cluster_id=target_id))
                for source_id in sources:
                    txn.put_cluster(replace(clusters[source_id], is_deleted=True, updated_at=now))
                    txn.drop_statistics(source_id)
                txn.put_cluster(replace(target, name=name, person_id=person_id, updated_at=now))
        LOGGER.info("Merged clusters %s into %s (%d faces moved)", sources, target_id, len(moved_faces))
        return entry

    def split_cluster(self, cluster_id: str, face_ids: Sequence[str], actor: str = "user") -> ClusterHistory:
        """Move ``face_ids`` (and their anchors) out of ``cluster_id`` into a new cluster."""
        source = self._live_cluster(cluster_id)
        wanted = list(dict.fromkeys(face_ids))
        if not wanted:
            raise ValueError("Split needs at least one face")
        with self.store.locked_clusters([cluster_id]):
            members = set(self.store.members(cluster_id))
            for face_id in wanted:
                self.store.require_face(face_id)
                if face_id not in members:
                    raise ValueError(f"Face {face_id} is not a member of cluster {cluster_id}")
            if len(wanted) >= len(members):
                raise ValueError("Split must leave at least one face in the original cluster")
            moving = set(wanted)
            anchors = [
                a for a in self.store.anchors(cluster_id, active_only=False) if a.is_active and a.face_id in moving
            ]
            new_cluster_id = self.id_factory()
            now = self.clock()
            with self.store.transaction() as txn:
                entry = self._record(
                    txn,
                    OperationType.SPLIT,
                    SplitPayload(
                        source_id=cluster_id,
                        new_cluster_id=new_cluster_id,
                        face_ids=tuple(wanted),
                        anchor_ids=tuple(a.anchor_id for a in anchors),
                    ),
                    cluster_id=new_cluster_id,
                    actor=actor,
                    source_cluster_id=cluster_id,
                )
                txn.put_cluster(PersonCluster(cluster_id=new_cluster_id, created_at=now, updated_at=now))
                for face_id in wanted:
                    txn.assign(face_id, new_cluster_id)
                for anchor in anchors:
                    txn.put_anchor(replace(anchor, cluster_id=new_cluster_id))
                txn.put_cluster(replace(source, updated_at=now))
        LOGGER.info("Split %d faces out of %s into %s", len(wanted), cluster_id, new_cluster_id)
        return entry

    def delete_cluster(self, cluster_id: str, actor: str = "user") -> ClusterHistory:
        """Soft-delete a cluster, deactivating its anchors and releasing its faces."""
        cluster = self._live_cluster(cluster_id)
        with self.store.locked_clusters([cluster_id]):
            face_ids = tuple(self.store.members(cluster_id))
            anchors = [a for a in self.store.anchors(cluster_id, active_only=False) if a.is_active]
            now = self.clock()
            with self.store.transaction() as txn:
                entry = self._record(
                    txn,
                    OperationType.DELETE,
                    DeletePayload(
                        cluster_id=cluster_id,
                        face_ids=face_ids,
                        deactivated_anchor_ids=tuple(a.anchor_id for a in anchors),
                    ),
                    cluster_id=cluster_id,
                    actor=actor,
                    previous_name=cluster.name,
                )
                for face_id in face_ids:
                    txn.assign(face_id, None)
                for anchor in anchors:
                    txn.put_anchor(replace(anchor, is_active=False))
                txn.put_cluster(replace(cluster, is_deleted=True, updated_at=now))
                txn.drop_statistics(cluster_id)
        LOGGER.info("Deleted cluster %s (%d faces released)", cluster_id, len(face_ids))
        return entry

    def rename_cluster(
        self,
        cluster_id: str,
        name: Optional[str],
        person_id: Optional[str] = None,
        actor: str = "user",
    ) -> ClusterHistory:
        cluster = self._live_cluster(cluster_id)
        cleaned = name.strip() if name is not None else None
        if cleaned == "":
            cleaned = None
        with self.store.transaction() as txn:
            entry = self._record(
                txn,
                OperationType.RENAME,
                RenamePayload(
                    cluster_id=cluster_id,
                    previous_name=cluster.name,
                    previous_person_id=cluster.person_id,
                    new_name=cleaned,
                    new_person_id=person_id,
                ),
                cluster_id=cluster_id,
                actor=actor,
                previous_name=cluster.name,
            )
            txn.put_cluster(replace(cluster, name=cleaned, person_id=person_id, updated_at=self.clock()))
        LOGGER.info("Renamed cluster %s: %r -> %r", cluster_id, cluster.name, cleaned)
        return entry

    # ------------------------------------------------------------------ undo
    def undo(self, history_id: str) -> UndoResult:
        """Reverse one history entry. Anything that prevents it is reported, not raised."""
        entry = self.store.get_history(history_id)
        if entry is None:
            return UndoResult(history_id, applied=False, reason="not_found")
        now = self.clock()
        if entry.undone_at is not None:
            return UndoResult(history_id, False, "already_undone", entry.operation_type)
        if not entry.can_undo:
            return UndoResult(history_id, False, "not_undoable", entry.operation_type)
        if entry.is_expired(now):
            return UndoResult(history_id, False, "expired", entry.operation_type)

        handler = {
            OperationType.CREATE: self._undo_create,
            OperationType.MERGE: self._undo_merge,
            OperationType.SPLIT: self._undo_split,
            OperationType.MOVE_FACE: self._undo_move,
            OperationType.DELETE: self._undo_delete,
            OperationType.RENAME: self._undo_rename,
        }[entry.operation_type]
        payload = entry.payload
        touched = _clusters_of(payload)
        try:
            with self.store.locked_clusters(touched):
                with self.store.transaction() as txn:
                    txn.put_history(replace(entry, undone_at=now))
                    handler(payload, txn, now)
        except StateChanged as exc:
            LOGGER.info("Undo of %s skipped: %s", history_id, exc)
            return UndoResult(history_id, False, "state_changed", entry.operation_type)
        LOGGER.info("Undid %s %s", entry.operation_type.value, history_id)
        return UndoResult(history_id, True, None, entry.operation_type, sorted(touched))

    def _require(self, condition: bool, message: str) -> None:
        if not condition:
            raise StateChanged(message)

    def _release_anchor(self, anchor: ClusterAnchor, reactivated_from: Optional[str], txn: Transaction) -> None:
        if reactivated_from is not None:
            txn.put_anchor(replace(anchor, cluster_id=reactivated_from, is_active=False))
        else:
            txn.drop_anchor(anchor.anchor_id)

    def _undo_create(self, p: CreatePayload, txn: Transaction, now: int) -> None:
        self._require(self.store.is_live(p.cluster_id), "cluster no longer live")
        self._require(self.store.members(p.cluster_id) == [p.face_id], "cluster membership changed")
        anchors = self.store.anchors(p.cluster_id, active_only=False)
        self._require([a.anchor_id for a in anchors] == [p.anchor_id], "cluster anchors changed")
        self._release_anchor(anchors[0], p.reactivated_from_cluster_id, txn)
        txn.assign(p.face_id, None)
        txn.drop_statistics(p.cluster_id)
        txn.drop_cluster(p.cluster_id)

    def _undo_move(self, p: MoveFacePayload, txn: Transaction, now: int) -> None:
        self._require(self.store.cluster_of(p.face_id) == p.to_cluster_id, "face moved again")
        if p.from_cluster_id is not None:
            self._require(self.store.is_live(p.from_cluster_id), "source cluster no longer live")
        if p.promoted_anchor_id is not None:
            anchor = self.store.get_anchor(p.promoted_anchor_id)
            self._require(anchor is not None and anchor.cluster_id == p.to_cluster_id, "promoted anchor changed")
            self._release_anchor(anchor, p.reactivated_from_cluster_id, txn)
        if p.moved_anchor_id is not None:
            anchor = self.store.get_anchor(p.moved_anchor_id)
            self._require(anchor is not None and anchor.cluster_id == p.to_cluster_id, "moved anchor changed")
            txn.put_anchor(replace(anchor, cluster_id=p.from_cluster_id))
        if p.matched_anchor_id is not None:
            matched = self.store.get_anchor(p.matched_anchor_id)
            if matched is not None and matched.match_count == p.previous_match_count + 1:
                txn.record_anchor_match(matched.anchor_id, p.previous_match_count, p.previous_last_matched_at)
            elif matched is not None and matched.match_count > 0:
                # later matches happened since; only take this one back
                txn.record_anchor_match(matched.anchor_id, matched.match_count - 1, matched.last_matched_at)
        txn.assign(p.face_id, p.from_cluster_id)

    def _undo_merge(self, p: MergePayload, txn: Transaction, now: int) -> None:
        target = self.store.get_cluster(p.target_id)
        self._require(target is not None and not target.is_deleted, "merge target no longer live")
        sources = {}
        for source_id in p.source_ids:
            source = self.store.get_cluster(source_id)
            self._require(source is not None and source.is_deleted, f"merged cluster {source_id} changed")
            sources[source_id] = source
        for face_id in p.moved_faces:
            self._require(self.store.cluster_of(face_id) == p.target_id, f"face {face_id} left the merge target")
        anchors = {}
        for anchor_id in p.moved_anchors:
            anchor = self.store.get_anchor(anchor_id)
            self._require(anchor is not None and anchor.cluster_id == p.target_id, f"anchor {anchor_id} changed")
            anchors[anchor_id] = anchor
        for source_id, source in sources.items():
            txn.put_cluster(replace(source, is_deleted=False, updated_at=now))
        for face_id, source_id in p.moved_faces.items():
            txn.assign(face_id, source_id)
        for anchor_id, source_id in p.moved_anchors.items():
            txn.put_anchor(replace(anchors[anchor_id], cluster_id=source_id))
        txn.put_cluster(
            replace(target, name=p.target_previous_name, person_id=p.target_previous_person_id, updated_at=now)
        )

    def _undo_split(self, p: SplitPayload, txn: Transaction, now: int) -> None:
        self._require(self.store.is_live(p.source_id), "split source no longer live")
        self._require(self.store.is_live(p.new_cluster_id), "split cluster no longer live")
        self._require(set(self.store.members(p.new_cluster_id)) == set(p.face_ids), "split cluster membership changed")
        current = {a.anchor_id: a for a in self.store.anchors(p.new_cluster_id, active_only=False)}
        self._require(set(current) == set(p.anchor_ids), "split cluster anchors changed")
        for face_id in p.face_ids:
            txn.assign(face_id, p.source_id)
        for anchor in current.values():
            txn.put_anchor(replace(anchor, cluster_id=p.source_id))
        txn.drop_statistics(p.new_cluster_id)
        txn.drop_cluster(p.new_cluster_id)

    def _undo_delete(self, p: DeletePayload, txn: Transaction, now: int) -> None:
        cluster = self.store.get_cluster(p.cluster_id)
        self._require(cluster is not None and cluster.is_deleted, "cluster is not deleted")
        for face_id in p.face_ids:
            self._require(self.store.cluster_of(face_id) is None, f"face {face_id} was reassigned")
        anchors = []
        for anchor_id in p.deactivated_anchor_ids:
            anchor = self.store.get_anchor(anchor_id)
            self._require(
                anchor is not None and anchor.cluster_id == p.cluster_id and not anchor.is_active,
                f"anchor {anchor_id} changed",
            )
            anchors.append(anchor)
        txn.put_cluster(replace(cluster, is_deleted=False, updated_at=now))
        for face_id in p.face_ids:
            txn.assign(face_id, p.cluster_id)
        for anchor in anchors:
            txn.put_anchor(replace(anchor, is_active=True))

    def _undo_rename(self, p: RenamePayload, txn: Transaction, now: int) -> None:
        cluster = self.store.get_cluster(p.cluster_id)
        self._require(cluster is not None and not cluster.is_deleted, "cluster no longer live")
        self._require(
            cluster.name == p.new_name and cluster.person_id == p.new_person_id, "cluster renamed again"
        )
        txn.put_cluster(replace(cluster, name=p.previous_name, person_id=p.previous_person_id, updated_at=now))

    # ------------------------------------------------------------------ queries
    def recent_undoable(self, limit: int = 20) -> List[ClusterHistory]:
        now = self.clock()
        entries = [entry for entry in self.store.history() if entry.is_undoable(now)]
        entries.reverse()
        return entries[:limit]

    def purge_expired_history(self, now: Optional[int] = None) -> int:
        current = self.clock() if now is None else now
        expired = [entry.history_id for entry in self.store.history() if entry.is_expired(current)]
        if not expired:
            return 0
        with self.store.transaction() as txn:
            for history_id in expired:
                txn.drop_history(history_id)
        LOGGER.info("Purged %d expired history entries", len(expired))
        return len(expired)


def _clusters_of(payload: UndoPayload) -> List[str]:
    if isinstance(payload, CreatePayload):
        return [payload.cluster_id]
    if isinstance(payload, MergePayload):
        return [payload.target_id, *payload.source_ids]
    if isinstance(payload, SplitPayload):
        return [payload.source_id, payload.new_cluster_id]
    if isinstance(payload, MoveFacePayload):
        return [cid for cid in (payload.from_cluster_id, payload.to_cluster_id) if cid]
    if isinstance(payload, DeletePayload):
        return [payload.cluster_id]
    return [payload.cluster_id]
