"""Pass 2: controlled recall over faces Pass 1 deferred."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from facegroups.clustering.constraints import ConstraintEnforcer
from facegroups.clustering.control import ScanControl
from facegroups.clustering.pass1 import REASON_CONSTRAINT_CONFLICT
from facegroups.clustering.sessions import SessionContext
from facegroups.config import ClusteringConfig
from facegroups.events import DecisionEvent, EventBus
from facegroups.history.mutations import MutationLog
from facegroups.recognition.anchor_index import AnchorIndex
from facegroups.recognition.bridges import find_pose_bridges
from facegroups.recognition.zones import SimilarityDecisionModel
from facegroups.storage.store import ClusterStore
from facegroups.types import AnchorMatchDecision, DeferredFace, DetectedFace, PhotoSession, PoseBridge

LOGGER = logging.getLogger("facegroups.clustering.pass2")

REASON_NO_ANCHOR = "no_anchor"
REASON_AMBIGUOUS = "ambiguous"
REASON_BELOW_THRESHOLD = "below_threshold"

PATH_HIGH = "high"
PATH_MULTI = "multi_anchor"
PATH_MUST_LINK = "must_link"


@dataclass
class Pass2Result:
    resolved: Dict[str, str] = field(default_factory=dict)
    paths: Dict[str, str] = field(default_factory=dict)
    unresolved: List[DeferredFace] = field(default_factory=list)
    bridges: List[PoseBridge] = field(default_factory=list)
    sessions: List[PhotoSession] = field(default_factory=list)
    processed: List[str] = field(default_factory=list)
    stopped: bool = False

    def summary(self) -> Dict[str, int]:
        return {
            "resolved": len(self.resolved),
            "unresolved": len(self.unresolved),
            "bridges": len(self.bridges),
            "sessions": len(self.sessions),
        }


class Pass2Resolver:
    """Replays deferred faces with session hints and multi-anchor voting.

    Pass 2 only ever joins existing clusters: it never founds a cluster and
    never promotes an anchor. Pose bridges found afterwards are published as
    merge suggestions and left for the caller to act on.
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
        deferred: Sequence[DeferredFace],
        batch_faces: Sequence[DetectedFace],
        control: Optional[ScanControl] = None,
        on_processed: Optional[Callable[[DeferredFace], None]] = None,
        result: Optional[Pass2Result] = None,
    ) -> Pass2Result:
        result = result if result is not None else Pass2Result()
        context = SessionContext.from_faces(batch_faces, self.store.assignments(), self.config.session_window_ms)
        result.sessions = context.sessions
        for item in deferred:
            if control is not None and not control.checkpoint():
                result.stopped = True
                break
            cluster_id = self._resolve(item, context, result)
            if cluster_id is not None:
                context.record(item.face, cluster_id)
            result.processed.append(item.face_id)
            if on_processed is not None:
                on_processed(item)

        if not result.stopped:
            result.bridges = find_pose_bridges(self.index.snapshot(), self.enforcer, self.config)
            for bridge in result.bridges:
                self.events.publish(
                    DecisionEvent.merge_suggested(bridge.cluster_id_a, bridge.cluster_id_b, bridge.confidence)
                )
        LOGGER.info("Pass 2 finished: %s", result.summary())
        return result

    def _resolve(self, item: DeferredFace, context: SessionContext, result: Pass2Result) -> Optional[str]:
        face = item.face
        current = self.store.cluster_of(face.face_id)
        if current is not None:
            return current
        if not item.tier.can_join_cluster:
            return self._leave(item, item.reason, result)

        forced, conflict = self.enforcer.must_link_target(face.face_id)
        if conflict:
            return self._leave(item, REASON_CONSTRAINT_CONFLICT, result)
        if forced is not None:
            with self.store.locked_clusters([forced]):
                if self.store.is_live(forced):
                    self._commit(item, forced, None, PATH_MUST_LINK, result)
                    return forced

        while True:
            snapshot = self.index.snapshot()
            matches = snapshot.match(face.embedding)
            decision = self.model.decide(
                matches,
                face.embedding_source,
                vetoed_clusters=self.enforcer.vetoed_clusters(face.face_id),
                boosted_clusters=context.hints_for(face),
            )
            item.all_matches = decision.all_matches
            path = self._evaluate(item, decision)
            if path is None:
                return self._leave(item, item.reason, result)
            target = decision.best_match.cluster_id
            with self.store.locked_clusters([target]):
                if self.index.version != snapshot.version:
                    continue
                self._commit(item, target, decision, path, result)
            return target

    def _evaluate(self, item: DeferredFace, decision: AnchorMatchDecision) -> Optional[str]:
        """Return the commit path, or None after recording why the face stays unassigned."""
        best = decision.best_match
        if best is None:
            item.reason = REASON_NO_ANCHOR
            return None
        item.candidate_cluster_id = best.cluster_id
        item.candidate_similarity = best.similarity
        if not self.model.has_enough_evidence(decision.evidence_gap):
            item.reason = REASON_AMBIGUOUS
            return None
        source = item.face.embedding_source
        if best.similarity >= self.model.pass2_high_threshold(source):
            return PATH_HIGH
        required = self.model.pass2_multi_anchor_threshold(source)
        stats = self.store.get_statistics(best.cluster_id)
        if stats is not None:
            required = max(required, stats.acceptance_threshold)
        supporting = {
            m.anchor_id
            for m in decision.all_matches
            if m.cluster_id == best.cluster_id and m.similarity >= required
        }
        if len(supporting) >= self.config.min_supporting_anchors:
            return PATH_MULTI
        item.reason = REASON_BELOW_THRESHOLD
        LOGGER.debug(
            "Face %s stays unassigned: best=%.3f required=%.3f support=%d",
            item.face_id,
            best.similarity,
            required,
            len(supporting),
        )
        return None

    def _commit(
        self,
        item: DeferredFace,
        cluster_id: str,
        decision: Optional[AnchorMatchDecision],
        path: str,
        result: Pass2Result,
    ) -> None:
        best = decision.best_match if decision is not None else None
        self.mutations.move_face(
            item.face_id,
            cluster_id,
            actor="auto",
            matched_anchor_id=best.anchor_id if best is not None else None,
        )
        result.resolved[item.face_id] = cluster_id
        result.paths[item.face_id] = path
        LOGGER.debug("Pass 2 resolved %s -> %s via %s", item.face_id, cluster_id, path)
        self.events.publish(
            DecisionEvent.assigned(
                item.face_id,
                cluster_id,
                similarity=best.similarity if best is not None else None,
                path=path,
                temporal_hint=decision.temporal_hint.value if decision and decision.temporal_hint else None,
                pass_number=2,
            )
        )

    def _leave(self, item: DeferredFace, reason: str, result: Pass2Result) -> None:
        item.reason = reason
        result.unresolved.append(item)
        self.events.publish(DecisionEvent.deferred(item.face_id, reason))
        return None
