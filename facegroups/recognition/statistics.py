"""Intra-cluster similarity statistics and the adaptive acceptance threshold."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

import numpy as np

from facegroups.config import ClusteringConfig
from facegroups.storage.store import ClusterStore
from facegroups.types import ClusterAnchor, ClusterStatistics, l2_normalize

LOGGER = logging.getLogger("facegroups.recognition.statistics")


def acceptance_threshold(mean: float, std_dev: float, config: Optional[ClusteringConfig] = None) -> float:
    """clamp(mean - k * std, floor, ceiling); non-finite input yields the ceiling."""
    cfg = config or ClusteringConfig()
    raw = mean - cfg.threshold_std_multiplier * std_dev
    if not math.isfinite(raw):
        return cfg.threshold_ceiling
    return float(min(cfg.threshold_ceiling, max(cfg.threshold_floor, raw)))


@dataclass
class StatisticsResult:
    statistics: ClusterStatistics
    anchor_means: Dict[str, float]


def _comparable(anchors: Sequence[ClusterAnchor]) -> List[ClusterAnchor]:
    """Anchors sharing the most common embedding dimensionality."""
    dims = Counter(int(a.embedding.shape[0]) for a in anchors)
    if not dims:
        return []
    dim, _ = max(dims.items(), key=lambda item: (item[1], item[0]))
    return [a for a in anchors if int(a.embedding.shape[0]) == dim]


def compute_cluster_statistics(
    cluster_id: str,
    anchors: Sequence[ClusterAnchor],
    total_face_count: int,
    config: Optional[ClusteringConfig] = None,
    now: Optional[int] = None,
) -> Optional[StatisticsResult]:
    """Pairwise statistics over the active anchors; None below two anchors."""
    cfg = config or ClusteringConfig()
    active = _comparable([a for a in anchors if a.is_active])
    if len(active) < 2:
        return None
    embeddings = np.stack([l2_normalize(np.asarray(a.embedding, dtype=np.float32)) for a in active])
    sims = embeddings @ embeddings.T
    iu = np.triu_indices(len(active), k=1)
    pair_sims = sims[iu].astype(np.float64)
    mean = float(pair_sims.mean())
    variance = float(pair_sims.var())
    std_dev = float(math.sqrt(variance))

    n = len(active)
    anchor_means = {}
    for idx, anchor in enumerate(active):
        others = np.delete(sims[idx], idx)
        anchor_means[anchor.anchor_id] = float(others.mean()) if n > 1 else 0.0

    poses = Counter(a.pose_category.value for a in active)
    stats = ClusterStatistics(
        cluster_id=cluster_id,
        mean_similarity=mean,
        variance=variance,
        std_dev=std_dev,
        min_similarity=float(pair_sims.min()),
        max_similarity=float(pair_sims.max()),
        acceptance_threshold=acceptance_threshold(mean, std_dev, cfg),
        anchor_count=n,
        total_face_count=int(total_face_count),
        pose_distribution=dict(poses),
        sample_count=int(pair_sims.size),
        last_updated_at=int(now if now is not None else time.time() * 1000),
    )
    return StatisticsResult(statistics=stats, anchor_means=anchor_means)


def refresh_cluster(
    store: ClusterStore,
    cluster_id: str,
    config: Optional[ClusteringConfig] = None,
    now: Optional[int] = None,
) -> Optional[ClusterStatistics]:
    """Recompute and store statistics for one cluster.

    Anchors are copied out of the store first; the computation itself runs
    without holding the store lock.
    """
    if not store.is_live(cluster_id):
        if store.get_statistics(cluster_id) is not None:
            with store.transaction() as txn:
                txn.drop_statistics(cluster_id)
        return None
    anchors = store.anchors(cluster_id)
    result = compute_cluster_statistics(cluster_id, anchors, store.member_count(cluster_id), config, now)
    with store.transaction() as txn:
        if result is None:
            if store.get_statistics(cluster_id) is not None:
                txn.drop_statistics(cluster_id)
            for anchor in anchors:
                txn.set_anchor_mean(anchor.anchor_id, 0.0)
            return None
        txn.put_statistics(result.statistics)
        for anchor_id, value in result.anchor_means.items():
            txn.set_anchor_mean(anchor_id, value)
    LOGGER.debug(
        "Cluster %s stats: mean=%.3f std=%.3f threshold=%.3f anchors=%d",
        cluster_id,
        result.statistics.mean_similarity,
        result.statistics.std_dev,
        result.statistics.acceptance_threshold,
        result.statistics.anchor_count,
    )
    return result.statistics


class StatisticsRefresher:
    """Single low-priority worker that refreshes cluster statistics in the background.

    Scheduling the same cluster twice before it runs queues one task. A
    cancelled cluster's pending task is skipped when it reaches the worker.
    """

    def __init__(
        self,
        store: ClusterStore,
        config: Optional[ClusteringConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.config = config or ClusteringConfig()
        self.clock = clock or (lambda: int(time.time() * 1000))
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stats-refresh")
        self._lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._cancelled: Set[str] = set()
        self._closed = False

    def schedule(self, cluster_ids: Iterable[str]) -> List[Future]:
        futures = []
        with self._lock:
            if self._closed:
                return futures
            for cluster_id in cluster_ids:
                self._cancelled.discard(cluster_id)
                future = self._pending.get(cluster_id)
                if future is None or future.done():
                    future = self._executor.submit(self._run, cluster_id)
                    self._pending[cluster_id] = future
                futures.append(future)
        return futures

    def schedule_dirty(self) -> List[Future]:
        return self.schedule(sorted(self.store.pop_dirty_clusters()))

    def cancel(self, cluster_id: str) -> None:
        with self._lock:
            self._cancelled.add(cluster_id)
            future = self._pending.get(cluster_id)
            if future is not None:
                future.cancel()

    def refresh_now(self, cluster_ids: Iterable[str]) -> Dict[str, Optional[ClusterStatistics]]:
        """Synchronous refresh for callers that need fresh thresholds immediately."""
        results = {}
        for cluster_id in sorted(set(cluster_ids)):
            results[cluster_id] = refresh_cluster(self.store, cluster_id, self.config, self.clock())
        return results

    def drain(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            futures = list(self._pending.values())
        for future in futures:
            if not future.cancelled():
                future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def _run(self, cluster_id: str) -> Optional[ClusterStatistics]:
        with self._lock:
            if cluster_id in self._cancelled or self._closed:
                return None
        try:
            return refresh_cluster(self.store, cluster_id, self.config, self.clock())
        except Exception as exc:  # pragma: no cover - runtime guard
            LOGGER.warning("Statistics refresh failed for %s: %s", cluster_id, exc)
            self.store.mark_dirty([cluster_id])
            return None
