"""Tunables for quality tiers, zone thresholds, Pass 2 recall and history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from facegroups.io_utils import load_yaml
from facegroups.types import EmbeddingSource

LOGGER = logging.getLogger("facegroups.config")

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class SourceThresholds:
    safe_same: float
    uncertain_low: float
    pass2_high: float
    pass2_multi: float

    def __post_init__(self) -> None:
        if self.uncertain_low > self.safe_same:
            raise ValueError(
                f"uncertain_low ({self.uncertain_low}) must not exceed safe_same ({self.safe_same})"
            )


def default_thresholds() -> Dict[EmbeddingSource, SourceThresholds]:
    return {
        EmbeddingSource.FACENET_512: SourceThresholds(0.62, 0.35, 0.50, 0.45),
        EmbeddingSource.MOBILEFACENET_192: SourceThresholds(0.58, 0.42, 0.52, 0.45),
        EmbeddingSource.HASH_FALLBACK: SourceThresholds(0.85, 0.70, 0.85, 0.70),
        EmbeddingSource.UNKNOWN: SourceThresholds(0.62, 0.35, 0.62, 0.55),
    }


@dataclass
class ClusteringConfig:
    # Quality tiers
    anchor_min_quality: float = 65.0
    anchor_min_sharpness: float = 15.0
    anchor_min_eye_visibility: float = 6.0
    anchor_max_abs_yaw: Optional[float] = None
    clustering_min_quality: float = 50.0
    clustering_min_sharpness: float = 10.0
    display_min_quality: float = 35.0
    # Similarity zones
    thresholds: Dict[EmbeddingSource, SourceThresholds] = field(default_factory=default_thresholds)
    min_evidence_gap: float = 0.10
    # Pass 2
    session_temporal_boost: float = 0.05
    session_window_ms: int = 60 * 60 * 1000
    min_supporting_anchors: int = 1
    # Pose bridges
    bridge_min_similarity: float = 0.55
    bridge_suggest_similarity: float = 0.60
    bridge_suggest_confidence: float = 0.65
    # Adaptive per-cluster threshold
    threshold_floor: float = 0.45
    threshold_ceiling: float = 0.65
    threshold_std_multiplier: float = 2.0
    max_anchors_per_cluster: int = 7
    # History and scanning
    undo_ttl_ms: Optional[int] = 7 * DAY_MS
    search_workers: int = 4
    checkpoint_path: Optional[str] = None

    def thresholds_for(self, source: EmbeddingSource) -> SourceThresholds:
        return self.thresholds.get(source) or self.thresholds[EmbeddingSource.UNKNOWN]

    def validate(self) -> "ClusteringConfig":
        if EmbeddingSource.UNKNOWN not in self.thresholds:
            raise ValueError("thresholds must define a default for UNKNOWN sources")
        if not 0.0 <= self.min_evidence_gap <= 1.0:
            raise ValueError("min_evidence_gap must lie in [0, 1]")
        if self.threshold_floor > self.threshold_ceiling:
            raise ValueError("threshold_floor must not exceed threshold_ceiling")
        if self.min_supporting_anchors < 1:
            raise ValueError("min_supporting_anchors must be >= 1")
        if self.max_anchors_per_cluster < 1:
            raise ValueError("max_anchors_per_cluster must be >= 1")
        if self.search_workers < 1:
            raise ValueError("search_workers must be >= 1")
        return self


def _parse_thresholds(raw: Dict[str, Any]) -> Dict[EmbeddingSource, SourceThresholds]:
    table = default_thresholds()
    for key, values in raw.items():
        try:
            source = EmbeddingSource(str(key).upper())
        except ValueError as exc:
            raise ValueError(f"Unknown embedding source in thresholds: {key}") from exc
        if not isinstance(values, dict):
            raise ValueError(f"thresholds.{key} must be a mapping")
        base = table[source]
        unknown = set(values) - {f.name for f in fields(SourceThresholds)}
        if unknown:
            raise ValueError(f"Unknown keys in thresholds.{key}: {sorted(unknown)}")
        table[source] = replace(base, **{k: float(v) for k, v in values.items()})
    return table


def config_from_dict(data: Dict[str, Any], base: Optional[ClusteringConfig] = None) -> ClusteringConfig:
    """Build a config from a plain mapping; missing keys keep their defaults."""
    cfg = base or ClusteringConfig()
    known = {f.name for f in fields(ClusteringConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown clustering config keys: {sorted(unknown)}")
    updates: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "thresholds":
            updates[key] = _parse_thresholds(value or {})
        else:
            updates[key] = value
    return replace(cfg, **updates).validate()


def load_config(path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None) -> ClusteringConfig:
    cfg = ClusteringConfig()
    if path is not None:
        raw = load_yaml(Path(path))
        cfg = config_from_dict(raw.get("clustering", raw), cfg)
        LOGGER.info("Loaded clustering config from %s", path)
    if overrides:
        cfg = config_from_dict({k: v for k, v in overrides.items() if v is not None}, cfg)
    return cfg.validate()
