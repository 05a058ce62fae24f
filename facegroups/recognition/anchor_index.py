"""Versioned, read-only snapshots of the active anchor set used for matching."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from facegroups.config import ClusteringConfig
from facegroups.storage.store import ClusterStore
from facegroups.types import AnchorMatch, ClusterAnchor, PoseCategory, l2_normalize

LOGGER = logging.getLogger("facegroups.recognition.anchor_index")


def select_matching_anchors(anchors: Sequence[ClusterAnchor], limit: int) -> List[ClusterAnchor]:
    """Pick up to ``limit`` anchors: best of each pose category first, then by quality."""
    by_quality = sorted(anchors, key=lambda a: (-a.quality_score, a.anchor_id))
    chosen: List[ClusterAnchor] = []
    seen = set()
    for pose in PoseCategory.priority_order():
        for anchor in by_quality:
            if anchor.pose_category is pose:
                chosen.append(anchor)
                seen.add(anchor.anchor_id)
                break
    for anchor in by_quality:
        if anchor.anchor_id not in seen:
            chosen.append(anchor)
            seen.add(anchor.anchor_id)
    return chosen[:limit]


@dataclass
class _DimGroup:
    matrix: np.ndarray  # (n, d) L2-normalized rows
    anchors: List[ClusterAnchor]


class AnchorIndexSnapshot:
    """Immutable view of the matching anchors at one anchor-set version."""

    def __init__(self, version: int, anchors: Sequence[ClusterAnchor], max_per_cluster: int) -> None:
        self.version = version
        per_cluster: Dict[str, List[ClusterAnchor]] = {}
        for anchor in anchors:
            per_cluster.setdefault(anchor.cluster_id, []).append(anchor)
        self.anchors_by_cluster: Dict[str, List[ClusterAnchor]] = {
            cluster_id: select_matching_anchors(items, max_per_cluster)
            for cluster_id, items in per_cluster.items()
        }
        grouped: Dict[int, List[ClusterAnchor]] = {}
        for items in self.anchors_by_cluster.values():
            for anchor in items:
                grouped.setdefault(int(anchor.embedding.shape[0]), []).append(anchor)
        self._groups: Dict[int, _DimGroup] = {}
        for dim, items in grouped.items():
            matrix = np.stack([l2_normalize(np.asarray(a.embedding, dtype=np.float32)) for a in items])
            self._groups[dim] = _DimGroup(matrix=matrix, anchors=items)

    @property
    def cluster_ids(self) -> List[str]:
        return sorted(self.anchors_by_cluster)

    @property
    def anchor_count(self) -> int:
        return sum(len(items) for items in self.anchors_by_cluster.values())

    def __len__(self) -> int:
        return self.anchor_count

    def match(self, embedding: np.ndarray, cluster_id: Optional[str] = None) -> List[AnchorMatch]:
        """Cosine similarity against every matching anchor of the same dimensionality."""
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        group = self._groups.get(int(vec.shape[0]))
        if group is None:
            return []
        sims = group.matrix @ l2_normalize(vec)
        matches = [
            AnchorMatch(
                cluster_id=anchor.cluster_id,
                anchor_id=anchor.anchor_id,
                similarity=float(score),
                pose_category=anchor.pose_category,
                anchor_quality=anchor.quality_score,
            )
            for anchor, score in zip(group.anchors, sims)
            if cluster_id is None or anchor.cluster_id == cluster_id
        ]
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches


class AnchorIndex:
    """Hands out snapshots of the store's active anchors, rebuilt when the version moves."""

    def __init__(self, store: ClusterStore, config: Optional[ClusteringConfig] = None) -> None:
        self.store = store
        self.config = config or ClusteringConfig()
        self._lock = threading.Lock()
        self._snapshot: Optional[AnchorIndexSnapshot] = None

    @property
    def version(self) -> int:
        return self.store.anchor_version

    def snapshot(self) -> AnchorIndexSnapshot:
        with self._lock:
            current = self._snapshot
            if current is not None and current.version == self.store.anchor_version:
                return current
            version, anchors = self.store.matching_view()
            self._snapshot = AnchorIndexSnapshot(version, anchors, self.config.max_anchors_per_cluster)
            LOGGER.debug(
                "Anchor index snapshot v%d: %d anchors over %d clusters",
                version,
                self._snapshot.anchor_count,
                len(self._snapshot.anchors_by_cluster),
            )
            return self._snapshot

    def is_current(self, snapshot: AnchorIndexSnapshot) -> bool:
        return snapshot.version == self.store.anchor_version
