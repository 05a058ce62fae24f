"""Source-aware three-zone classification of anchor similarity scores."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from facegroups.config import ClusteringConfig, SourceThresholds
from facegroups.types import (
    AnchorMatch,
    AnchorMatchDecision,
    DecisionZone,
    EmbeddingSource,
    TemporalHint,
)

LOGGER = logging.getLogger("facegroups.recognition.zones")

# float slack so a gap of exactly min_evidence_gap counts as enough
GAP_TOLERANCE = 1e-9


def best_per_cluster(matches: Iterable[AnchorMatch]) -> Dict[str, AnchorMatch]:
    """Keep the highest scoring anchor match of each cluster."""
    best: Dict[str, AnchorMatch] = {}
    for match in matches:
        current = best.get(match.cluster_id)
        if current is None or match.similarity > current.similarity:
            best[match.cluster_id] = match
    return best


def boosted(match: AnchorMatch, boost: float) -> AnchorMatch:
    if boost == 0.0:
        return match
    return AnchorMatch(
        cluster_id=match.cluster_id,
        anchor_id=match.anchor_id,
        similarity=min(1.0, match.similarity + boost),
        pose_category=match.pose_category,
        anchor_quality=match.anchor_quality,
    )


class SimilarityDecisionModel:
    """Threshold lookup per embedding source plus zone classification."""

    def __init__(self, config: Optional[ClusteringConfig] = None) -> None:
        self.config = config or ClusteringConfig()

    def thresholds(self, source: EmbeddingSource) -> SourceThresholds:
        return self.config.thresholds_for(source)

    def safe_same_threshold(self, source: EmbeddingSource) -> float:
        return self.thresholds(source).safe_same

    def uncertain_low_threshold(self, source: EmbeddingSource) -> float:
        return self.thresholds(source).uncertain_low

    def pass2_high_threshold(self, source: EmbeddingSource) -> float:
        return self.thresholds(source).pass2_high

    def pass2_multi_anchor_threshold(self, source: EmbeddingSource) -> float:
        return self.thresholds(source).pass2_multi

    def has_enough_evidence(self, gap: float) -> bool:
        return gap + GAP_TOLERANCE >= self.config.min_evidence_gap

    def classify(self, score: float, source: EmbeddingSource) -> DecisionZone:
        table = self.thresholds(source)
        if score >= table.safe_same:
            return DecisionZone.SAFE_SAME
        if score < table.uncertain_low:
            return DecisionZone.SAFE_DIFFERENT
        return DecisionZone.UNCERTAIN

    def decide(
        self,
        matches: List[AnchorMatch],
        source: EmbeddingSource,
        vetoed_clusters: Optional[Set[str]] = None,
        boosted_clusters: Optional[Dict[str, TemporalHint]] = None,
        boost: Optional[float] = None,
    ) -> AnchorMatchDecision:
        """Classify the best candidate cluster.

        Matches against vetoed clusters are dropped before ranking. Clusters in
        ``boosted_clusters`` get the session boost added to each of their
        anchor scores. The evidence gap is measured between the best cluster
        and the best different cluster, or against 0.0 when only one cluster
        is in play.
        """
        vetoed = vetoed_clusters or set()
        hints = boosted_clusters or {}
        amount = self.config.session_temporal_boost if boost is None else boost

        considered: List[AnchorMatch] = []
        for match in matches:
            if match.cluster_id in vetoed:
                continue
            considered.append(boosted(match, amount) if match.cluster_id in hints else match)
        considered.sort(key=lambda m: m.similarity, reverse=True)

        if not considered:
            return AnchorMatchDecision(
                zone=DecisionZone.SAFE_DIFFERENT,
                best_match=None,
                all_matches=[],
                evidence_gap=0.0,
            )

        ranked = sorted(best_per_cluster(considered).values(), key=lambda m: m.similarity, reverse=True)
        top = ranked[0]
        runner_up = ranked[1].similarity if len(ranked) > 1 else 0.0
        gap = top.similarity - runner_up
        zone = self.classify(top.similarity, source)
        supporting = sum(
            1
            for m in considered
            if m.cluster_id == top.cluster_id and m.similarity >= self.pass2_multi_anchor_threshold(source)
        )
        decision = AnchorMatchDecision(
            zone=zone,
            best_match=top,
            all_matches=considered,
            evidence_gap=gap,
            supporting_anchor_count=supporting,
            requires_more_evidence=zone is DecisionZone.SAFE_SAME and not self.has_enough_evidence(gap),
            temporal_hint=hints.get(top.cluster_id),
        )
        LOGGER.debug(
            "Decision zone=%s best=%.3f cluster=%s gap=%.3f support=%d",
            zone.value,
            top.similarity,
            top.cluster_id,
            gap,
            supporting,
        )
        return decision
