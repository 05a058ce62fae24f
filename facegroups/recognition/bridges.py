"""Cross-cluster pose bridges: merge suggestions, never applied automatically."""

from __future__ import annotations

import logging
from itertools import combinations
from typing import Dict, List, Optional, Tuple

import numpy as np

from facegroups.config import ClusteringConfig
from facegroups.recognition.anchor_index import AnchorIndexSnapshot
from facegroups.types import PoseBridge, PoseCategory, l2_normalize

LOGGER = logging.getLogger("facegroups.recognition.bridges")

_SLIGHT = {PoseCategory.SLIGHT_LEFT, PoseCategory.SLIGHT_RIGHT}
_ADJACENT = {
    frozenset({PoseCategory.SLIGHT_LEFT, PoseCategory.PROFILE_LEFT}),
    frozenset({PoseCategory.SLIGHT_RIGHT, PoseCategory.PROFILE_RIGHT}),
}


def pose_compatibility_bonus(pose_a: PoseCategory, pose_b: PoseCategory) -> float:
    if pose_a is pose_b:
        return 0.15
    pair = {pose_a, pose_b}
    if PoseCategory.FRONTAL in pair and pair & _SLIGHT:
        return 0.12
    if frozenset(pair) in _ADJACENT:
        return 0.08
    return 0.03


def bridge_confidence(similarity: float, pose_a: PoseCategory, pose_b: PoseCategory) -> float:
    return float(min(1.0, max(0.0, similarity + pose_compatibility_bonus(pose_a, pose_b))))


def find_pose_bridges(
    snapshot: AnchorIndexSnapshot,
    enforcer=None,
    config: Optional[ClusteringConfig] = None,
    suggestions_only: bool = True,
) -> List[PoseBridge]:
    """Best anchor-to-anchor bridge for every pair of clusters in the snapshot.

    With ``suggestions_only`` the result keeps bridges that clear both the
    similarity and confidence cut-offs. Pairs blocked by a CANNOT_LINK
    constraint are never returned.
    """
    cfg = config or ClusteringConfig()
    best: Dict[Tuple[str, str], PoseBridge] = {}
    clusters = snapshot.cluster_ids
    for cluster_a, cluster_b in combinations(clusters, 2):
        for anchor_a in snapshot.anchors_by_cluster[cluster_a]:
            vec_a = l2_normalize(np.asarray(anchor_a.embedding, dtype=np.float32))
            for anchor_b in snapshot.anchors_by_cluster[cluster_b]:
                if anchor_a.embedding.shape != anchor_b.embedding.shape:
                    continue
                similarity = float(np.dot(vec_a, l2_normalize(np.asarray(anchor_b.embedding, dtype=np.float32))))
                if similarity < cfg.bridge_min_similarity:
                    continue
                bridge = PoseBridge(
                    cluster_id_a=cluster_a,
                    cluster_id_b=cluster_b,
                    anchor_id_a=anchor_a.anchor_id,
                    anchor_id_b=anchor_b.anchor_id,
                    similarity=similarity,
                    pose_a=anchor_a.pose_category,
                    pose_b=anchor_b.pose_category,
                    confidence=bridge_confidence(similarity, anchor_a.pose_category, anchor_b.pose_category),
                )
                current = best.get((cluster_a, cluster_b))
                if current is None or bridge.confidence > current.confidence:
                    best[(cluster_a, cluster_b)] = bridge

    bridges = []
    for (cluster_a, cluster_b), bridge in sorted(best.items()):
        if suggestions_only and not bridge.is_likely_same_person(
            cfg.bridge_suggest_similarity, cfg.bridge_suggest_confidence
        ):
            continue
        if enforcer is not None and not enforcer.allows_merge(cluster_a, cluster_b):
            LOGGER.debug("Bridge %s/%s blocked by CANNOT_LINK", cluster_a, cluster_b)
            continue
        bridges.append(bridge)
    bridges.sort(key=lambda b: b.confidence, reverse=True)
    return bridges
