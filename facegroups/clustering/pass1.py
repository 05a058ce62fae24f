"""Pass 1: immediate, high-precision assignment of newly detected faces."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from facegroups.clustering.constraints import ConstraintEnforcer
from facegroups.clustering.control import ScanControl
from facegroups.config import ClusteringConfig
from facegroups.errors import InvalidEmbeddingError
from facegroups.events import DecisionEvent, EventBus
from facegroups.history.mutations import MutationLog
from facegroups.quality.tiers import classify_face
from facegroups.recognition.anchor_index import AnchorIndex
from facegroups.recognition.zones import SimilarityDecisionModel
from facegroups.storage.store import ClusterStore
from facegroups.types import (
    AnchorMatch,
    AnchorMatchDecision,
    DecisionZone,
    DeferredFace,
    DetectedFace,
    QualityTier,
    validate_embedding,
)

LOGGER = logging.getLogger("facegroups.clustering.pass1")

NEW_CLUSTER_LOCK = "__new_cluster__"

# Deferral reasons
REASON_UNCERTAIN = "uncertain"
REASON_INSUFFICIENT_GAP = "insufficient_gap"
REASON_NO_NEARBY_ANCHOR = "no_nearby_anchor"
REASON_CONSTRAINT_CONFLICT = "constraint_conflict"


@dataclass
class Pass1Result:
    assigned: Dict[str, str] = field(default_factory=dict)
    created: Dict[str, str] = field(default_factory=dict)  # cluster_id -> founding face
    deferred: List[DeferredFace] = field(default_factory=list)
    display_only: List[str] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    processed: List[str] = field(default_factory=list)
    stopped: bool = False

    def summary(self) -> Dict[str, int]:
        return {
            "assigned": len(self.assigned),
            "created": len(self.created),
            "deferred": len(self.deferred),
            "display_only": len(self.display_only),
            "rejected": len(self.rejected),
            "skipped": len(self.skipped),
        }


@dataclass
class _Prepared:
    face: DetectedFace
    tier: QualityTier
    error: Optional[str] = None


class Pass1Assigner:
    """Commits only SAFE_SAME (with evidence gap) and anchor-founded SAFE_DIFFERENT decisions.

    Anchor searches for a chunk of faces run in a thread pool against one
    index snapshot; decisions and commits then happen one face at a time in
    arrival order. A match list computed against an older snapshot is
    recomputed before it is acted upon.
    """

    def __init__(
        self,
        store: ClusterStore,
        index: AnchorIndex,
        mutations: MutationLog,
        enforcer: ConstraintEnforcer,
        config: Optional[ClusteringConfig] = None,
        model: Optional[SimilarityDecisionModel] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.index = index
        self.mutations = mutations
        self.enforcer = enforcer
        self.config = config or ClusteringConfig()
        self.model = model or SimilarityDecisionModel(self.config)
        self.events = events or EventBus()

    def run(
        self,
        faces: Sequence[DetectedFace],
        control: Optional[ScanControl] = None,
        on_processed: Optional[Callable[[DetectedFace], None]] = None,
        result: Optional[Pass1Result] = None,
    ) -> Pass1Result:
        result = result if result is not None else Pass1Result()
        workers = max(1, int(self.config.search_workers))
        chunk_size = workers * 16
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="anchor-search") as pool:
            for start in range(0, len(faces), chunk_size):
                prepared = [self._prepare(face) for face in faces[start : start + chunk_size]]
                self._store_detections(prepared)
                snapshot = self.index.snapshot()
                searchable = [p for p in prepared if p.error is None and p.tier.can_join_cluster]
                found = pool.map(lambda p: snapshot.match(p.face.embedding), searchable)
                prefetched = {
                    p.face.face_id: (snapshot.version, matches) for p, matches in zip(searchable, found)
                }
                for item in prepared:
                    if control is not None and not control.checkpoint():
                        result.stopped = True
                        break
                    self._process(item, prefetched.get(item.face.face_id), result)
                    result.processed.append(item.face.face_id)
                    if on_processed is not None:
                        on_processed(item.face)
                if result.stopped:
                    break
        LOGGER.info("Pass 1 finished: %s", result.summary())
        return result

    # ------------------------------------------------------------------ stages
    def _prepare(self, face: DetectedFace) -> _Prepared:
        try:
            embedding = validate_embedding(face.embedding, face.embedding_source)
        except InvalidEmbeddingError as exc:
            return _Prepared(face=face, tier=QualityTier.REJECTED, error=f"invalid_embedding: {exc}")
        face = replace(face, embedding=embedding)
        return _Prepared(face=face, tier=classify_face(face, self.config))

    def _store_detections(self, prepared: Sequence[_Prepared]) -> None:
        keep = [p for p in prepared if p.error is None and p.tier is not QualityTier.REJECTED]
        if not keep:
            return
        with self.store.transaction() as txn:
            for item in keep:
                existing = self.store.get_face(item.face.face_id)
                if existing is None or existing.tier is not item.tier:
                    txn.put_face(item.face, item.tier)

    def _process(
        self,
        item: _Prepared,
        prefetched: Optional[Tuple[int, List[AnchorMatch]]],
        result: Pass1Result,
    ) -> None:
        face, tier = item.face, item.tier
        if item.error is not None or tier is QualityTier.REJECTED:
            reason = item.error or "low_quality"
            result.rejected[face.face_id] = reason
            if item.error is not None:
                LOGGER.warning("Rejected face %s: %s", face.face_id, reason)
            else:
                LOGGER.debug("Rejected face %s: %s", face.face_id, reason)
            self.events.publish(DecisionEvent.rejected(face.face_id, reason))
            return
        if tier is QualityTier.DISPLAY_ONLY:
            result.display_only.append(face.face_id)
            return
        existing = self.store.cluster_of(face.face_id)
        if existing is not None:
            result.skipped.append(face.face_id)
            return

        forced, conflict = self.enforcer.must_link_target(face.face_id)
        if conflict:
            self._defer(face, tier, REASON_CONSTRAINT_CONFLICT, None, result)
            return
        if forced is not None:
            with self.store.locked_clusters([forced]):
                if self.store.is_live(forced):
                    self._assign(face, tier, forced, None, result, forced=True)
                    return
        self._decide_and_commit(face, tier, prefetched, result)

    def _matches(
        self, face: DetectedFace, prefetched: Optional[Tuple[int, List[AnchorMatch]]]
    ) -> Tuple[int, List[AnchorMatch]]:
        if prefetched is not None and prefetched[0] == self.index.version:
            return prefetched
        snapshot = self.index.snapshot()
        return snapshot.version, snapshot.match(face.embedding)

    def _decide_and_commit(
        self,
        face: DetectedFace,
        tier: QualityTier,
        prefetched: Optional[Tuple[int, List[AnchorMatch]]],
        result: Pass1Result,
    ) -> None:
        while True:
            version, matches = self._matches(face, prefetched)
            prefetched = None
            decision = self.model.decide(matches, face.embedding_source, self.enforcer.vetoed_clusters(face.face_id))
            if decision.can_commit:
                target = decision.best_match.cluster_id
                with self.store.locked_clusters([target]):
                    if self.index.version != version:
                        continue
                    self._assign(face, tier, target, decision, result)
                return
            if decision.should_create_cluster:
                if not tier.can_found_cluster:
                    self._defer(face, tier, REASON_NO_NEARBY_ANCHOR, decision, result)
                    return
                with self.store.locked_clusters([NEW_CLUSTER_LOCK]):
                    if self.index.version != version:
                        continue
                    self._create(face, result)
                return
            reason = REASON_UNCERTAIN if decision.zone is DecisionZone.UNCERTAIN else REASON_INSUFFICIENT_GAP
            self._defer(face, tier, reason, decision, result)
            return

    # ------------------------------------------------------------------ commits
    def _assign(
        self,
        face: DetectedFace,
        tier: QualityTier,
        cluster_id: str,
        decision: Optional[AnchorMatchDecision],
        result: Pass1Result,
        forced: bool = False,
    ) -> None:
        best = decision.best_match if decision is not None else None
        entry = self.mutations.move_face(
            face.face_id,
            cluster_id,
            actor="auto",
            promote_face=face if tier.can_update_representatives else None,
            matched_anchor_id=best.anchor_id if best is not None else None,
        )
        result.assigned[face.face_id] = cluster_id
        promoted = entry.payload.promoted_anchor_id is not None
        LOGGER.debug(
            "Assigned %s -> %s (sim=%s gap=%s promoted=%s forced=%s)",
            face.face_id,
            cluster_id,
            f"{best.similarity:.3f}" if best is not None else "-",
            f"{decision.evidence_gap:.3f}" if decision is not None else "-",
            promoted,
            forced,
        )
        self.events.publish(
            DecisionEvent.assigned(
                face.face_id,
                cluster_id,
                similarity=best.similarity if best is not None else None,
                promoted=promoted,
                forced=forced,
                pass_number=1,
            )
        )

    def _create(self, face: DetectedFace, result: Pass1Result) -> None:
        entry = self.mutations.create_cluster(face, actor="auto")
        result.created[entry.cluster_id] = face.face_id
        result.assigned[face.face_id] = entry.cluster_id
        self.events.publish(DecisionEvent.cluster_created(entry.cluster_id, entry.payload.anchor_id, face.face_id))

    def _defer(
        self,
        face: DetectedFace,
        tier: QualityTier,
        reason: str,
        decision: Optional[AnchorMatchDecision],
        result: Pass1Result,
    ) -> None:
        best = decision.best_match if decision is not None else None
        result.deferred.append(
            DeferredFace(
                face=face,
                tier=tier,
                reason=reason,
                candidate_cluster_id=best.cluster_id if best is not None else None,
                candidate_similarity=best.similarity if best is not None else 0.0,
                all_matches=list(decision.all_matches) if decision is not None else [],
            )
        )
        LOGGER.debug(
            "Deferred %s (%s): best=%s",
            face.face_id,
            reason,
            f"{best.similarity:.3f}@{best.cluster_id}" if best is not None else "-",
        )
        self.events.publish(DecisionEvent.deferred(face.face_id, reason))
