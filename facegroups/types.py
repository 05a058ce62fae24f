"""Common enums, dataclasses and vector helpers used across the facegroups package."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from facegroups.errors import InvalidEmbeddingError

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]


class EmbeddingSource(str, Enum):
    """Model that produced an embedding. Thresholds are looked up per source."""

    FACENET_512 = "FACENET_512"
    MOBILEFACENET_192 = "MOBILEFACENET_192"
    HASH_FALLBACK = "HASH_FALLBACK"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_tag(cls, raw: Optional[str]) -> "EmbeddingSource":
        if raw is None:
            return cls.UNKNOWN
        if isinstance(raw, EmbeddingSource):
            return raw
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def expected_dim(self) -> Optional[int]:
        return {
            EmbeddingSource.FACENET_512: 512,
            EmbeddingSource.MOBILEFACENET_192: 192,
        }.get(self)


class QualityTier(str, Enum):
    ANCHOR = "ANCHOR"
    CLUSTERING = "CLUSTERING"
    DISPLAY_ONLY = "DISPLAY_ONLY"
    REJECTED = "REJECTED"

    @property
    def can_found_cluster(self) -> bool:
        return self is QualityTier.ANCHOR

    @property
    def can_join_cluster(self) -> bool:
        return self in (QualityTier.ANCHOR, QualityTier.CLUSTERING)

    @property
    def can_update_representatives(self) -> bool:
        return self is QualityTier.ANCHOR


class PoseCategory(str, Enum):
    FRONTAL = "FRONTAL"
    SLIGHT_LEFT = "SLIGHT_LEFT"
    SLIGHT_RIGHT = "SLIGHT_RIGHT"
    PROFILE_LEFT = "PROFILE_LEFT"
    PROFILE_RIGHT = "PROFILE_RIGHT"

    @classmethod
    def from_yaw(cls, yaw: Optional[float]) -> "PoseCategory":
        """Bucket a yaw angle (negative = left) into a pose category."""
        if yaw is None or np.isnan(yaw):
            return cls.FRONTAL
        if -15.0 <= yaw <= 15.0:
            return cls.FRONTAL
        if 15.0 < yaw <= 35.0:
            return cls.SLIGHT_RIGHT
        if -35.0 <= yaw < -15.0:
            return cls.SLIGHT_LEFT
        if yaw > 35.0:
            return cls.PROFILE_RIGHT
        return cls.PROFILE_LEFT

    @classmethod
    def priority_order(cls) -> List["PoseCategory"]:
        return [cls.FRONTAL, cls.SLIGHT_LEFT, cls.SLIGHT_RIGHT, cls.PROFILE_LEFT, cls.PROFILE_RIGHT]


class DecisionZone(str, Enum):
    SAFE_SAME = "SAFE_SAME"
    UNCERTAIN = "UNCERTAIN"
    SAFE_DIFFERENT = "SAFE_DIFFERENT"


class TemporalHint(str, Enum):
    SAME_PHOTO = "SAME_PHOTO"
    SESSION_MATCH = "SESSION_MATCH"


class ConstraintType(str, Enum):
    MUST_LINK = "MUST_LINK"
    CANNOT_LINK = "CANNOT_LINK"


class OperationType(str, Enum):
    MERGE = "MERGE"
    SPLIT = "SPLIT"
    MOVE_FACE = "MOVE_FACE"
    CREATE = "CREATE"
    DELETE = "DELETE"
    RENAME = "RENAME"


@dataclass(frozen=True, eq=False)
class DetectedFace:
    """Face record handed over by the detection pipeline. Never mutated once stored."""

    face_id: str
    embedding: np.ndarray
    quality_score: float
    sharpness: float
    eye_visibility: float
    yaw: Optional[float] = None
    roll: Optional[float] = None
    photo_uri: str = ""
    photo_timestamp: Optional[int] = None  # epoch milliseconds
    embedding_source: EmbeddingSource = EmbeddingSource.UNKNOWN
    bbox: BBox = (0.0, 0.0, 0.0, 0.0)

    @property
    def pose_category(self) -> PoseCategory:
        return PoseCategory.from_yaw(self.yaw)


@dataclass
class ClusterAnchor:
    """ANCHOR-tier face embedding acting as an identity reference for one cluster."""

    anchor_id: str
    cluster_id: str
    face_id: str
    embedding: np.ndarray
    quality_score: float
    sharpness_score: float
    eye_visibility_score: float
    pose_category: PoseCategory
    yaw: float = 0.0
    roll: float = 0.0
    embedding_source: EmbeddingSource = EmbeddingSource.UNKNOWN
    intra_cluster_mean_similarity: float = 0.0
    is_active: bool = True
    match_count: int = 0
    last_matched_at: int = 0
    created_at: int = 0


@dataclass
class PersonCluster:
    cluster_id: str
    person_id: Optional[str] = None
    name: Optional[str] = None
    is_deleted: bool = False
    created_at: int = 0
    updated_at: int = 0


@dataclass
class ClusterStatistics:
    cluster_id: str
    mean_similarity: float
    variance: float
    std_dev: float
    min_similarity: float
    max_similarity: float
    acceptance_threshold: float
    anchor_count: int
    total_face_count: int
    pose_distribution: Dict[str, int] = field(default_factory=dict)
    sample_count: int = 0
    last_updated_at: int = 0


@dataclass
class ClusteringConstraint:
    constraint_id: str
    constraint_type: ConstraintType
    face_id1: str
    face_id2: str
    created_at: int = 0
    created_by: str = "user"

    def involves(self, face_id: str) -> bool:
        return face_id in (self.face_id1, self.face_id2)

    def partner_of(self, face_id: str) -> Optional[str]:
        if face_id == self.face_id1:
            return self.face_id2
        if face_id == self.face_id2:
            return self.face_id1
        return None

    @property
    def pair_key(self) -> Tuple[str, str]:
        return tuple(sorted((self.face_id1, self.face_id2)))  # type: ignore[return-value]


@dataclass(frozen=True)
class AnchorMatch:
    cluster_id: str
    anchor_id: str
    similarity: float
    pose_category: PoseCategory
    anchor_quality: float


@dataclass
class AnchorMatchDecision:
    """Zone classification of the best candidate cluster plus its supporting evidence."""

    zone: DecisionZone
    best_match: Optional[AnchorMatch]
    all_matches: List[AnchorMatch]
    evidence_gap: float
    supporting_anchor_count: int = 0
    requires_more_evidence: bool = False
    temporal_hint: Optional[TemporalHint] = None

    @property
    def can_commit(self) -> bool:
        return self.zone is DecisionZone.SAFE_SAME and not self.requires_more_evidence

    @property
    def should_create_cluster(self) -> bool:
        return self.zone is DecisionZone.SAFE_DIFFERENT

    @property
    def should_defer(self) -> bool:
        return self.zone is DecisionZone.UNCERTAIN or self.requires_more_evidence


@dataclass
class DeferredFace:
    """Face Pass 1 could not safely resolve. Lives in memory between the two passes."""

    face: DetectedFace
    tier: QualityTier
    reason: str
    candidate_cluster_id: Optional[str] = None
    candidate_similarity: float = 0.0
    all_matches: List[AnchorMatch] = field(default_factory=list)

    @property
    def face_id(self) -> str:
        return self.face.face_id

    @property
    def embedding(self) -> np.ndarray:
        return self.face.embedding

    @property
    def quality_score(self) -> float:
        return self.face.quality_score

    @property
    def pose_category(self) -> PoseCategory:
        return self.face.pose_category

    @property
    def photo_timestamp(self) -> Optional[int]:
        return self.face.photo_timestamp


@dataclass(frozen=True)
class PoseBridge:
    """Suggested link between anchors of two clusters at compatible head poses."""

    cluster_id_a: str
    cluster_id_b: str
    anchor_id_a: str
    anchor_id_b: str
    similarity: float
    pose_a: PoseCategory
    pose_b: PoseCategory
    confidence: float

    def is_likely_same_person(self, min_similarity: float = 0.60, min_confidence: float = 0.65) -> bool:
        return self.similarity >= min_similarity and self.confidence >= min_confidence


@dataclass
class PhotoSession:
    """Photos taken close together in time. Only ever used as a soft hint."""

    session_id: str
    start_ms: int
    end_ms: int
    window_ms: int = 3_600_000
    photo_uris: Set[str] = field(default_factory=set)
    cluster_ids: Set[str] = field(default_factory=set)

    def contains_time(self, timestamp_ms: int) -> bool:
        return self.start_ms - self.window_ms <= timestamp_ms <= self.end_ms + self.window_ms

    def add_photo(self, photo_uri: str, timestamp_ms: int) -> None:
        self.photo_uris.add(photo_uri)
        self.start_ms = min(self.start_ms, timestamp_ms)
        self.end_ms = max(self.end_ms, timestamp_ms)


def l2_normalize(vec: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """L2-normalize the input vector."""
    norm = np.linalg.norm(vec)
    if norm < eps:
        return vec
    return vec / norm


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    if a.shape != b.shape:
        raise ValueError("Embedding shapes do not match")
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom <= 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def validate_embedding(embedding: np.ndarray, source: EmbeddingSource = EmbeddingSource.UNKNOWN) -> np.ndarray:
    """Return the embedding as a 1D float32 vector or raise InvalidEmbeddingError."""
    arr = np.asarray(embedding, dtype=np.float32)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    if arr.size == 0:
        raise InvalidEmbeddingError("Embedding is empty")
    expected = source.expected_dim
    if expected is not None and arr.size != expected:
        raise InvalidEmbeddingError(f"Expected {expected}-dim embedding for {source.value}, got {arr.size}")
    if not np.all(np.isfinite(arr)):
        raise InvalidEmbeddingError("Embedding contains NaN or infinite values")
    if float(np.linalg.norm(arr)) < 1e-6:
        raise InvalidEmbeddingError("Embedding has zero norm")
    return arr
