"""Map raw per-face quality metrics to a clustering tier."""

from __future__ import annotations

import logging
import math
from typing import Optional

from facegroups.config import ClusteringConfig
from facegroups.types import DetectedFace, QualityTier

LOGGER = logging.getLogger("facegroups.quality.tiers")

# Yaw assumed for faces whose head pose was not estimated
MISSING_YAW_DEGREES = 45.0


def _finite(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    value = float(value)
    return value if math.isfinite(value) else 0.0


def classify_quality(
    quality_score: float,
    sharpness: float,
    eye_visibility: float,
    yaw: Optional[float] = None,
    config: Optional[ClusteringConfig] = None,
) -> QualityTier:
    """Return the tier for one face. Total over all inputs: NaN metrics count as zero."""
    cfg = config or ClusteringConfig()
    score = _finite(quality_score)
    sharp = _finite(sharpness)
    eyes = _finite(eye_visibility)

    if (
        score >= cfg.anchor_min_quality
        and sharp >= cfg.anchor_min_sharpness
        and eyes >= cfg.anchor_min_eye_visibility
        and _pose_allows_anchor(yaw, cfg)
    ):
        return QualityTier.ANCHOR
    if score >= cfg.clustering_min_quality and sharp >= cfg.clustering_min_sharpness:
        return QualityTier.CLUSTERING
    if score >= cfg.display_min_quality:
        return QualityTier.DISPLAY_ONLY
    return QualityTier.REJECTED


def _pose_allows_anchor(yaw: Optional[float], cfg: ClusteringConfig) -> bool:
    if cfg.anchor_max_abs_yaw is None:
        return True
    if yaw is None or not math.isfinite(yaw):
        effective = MISSING_YAW_DEGREES
    else:
        effective = abs(float(yaw))
    return effective <= cfg.anchor_max_abs_yaw


def classify_face(face: DetectedFace, config: Optional[ClusteringConfig] = None) -> QualityTier:
    tier = classify_quality(
        face.quality_score,
        face.sharpness,
        face.eye_visibility,
        yaw=face.yaw,
        config=config,
    )
    LOGGER.debug("Face %s -> tier %s (q=%.1f)", face.face_id, tier.value, _finite(face.quality_score))
    return tier


def is_anchor_eligible(face: DetectedFace, config: Optional[ClusteringConfig] = None) -> bool:
    return classify_face(face, config) is QualityTier.ANCHOR
