import itertools
from typing import Dict, Optional, Sequence

import numpy as np
import pytest

from facegroups.config import ClusteringConfig
from facegroups.engine import ClusteringEngine
from facegroups.events import EventBus, EventRecorder
from facegroups.storage.store import ClusterStore
from facegroups.types import (
    ClusterAnchor,
    DetectedFace,
    EmbeddingSource,
    PersonCluster,
    PoseCategory,
    QualityTier,
)

DIM = 512
START_MS = 1_700_000_000_000


def unit(components: Dict[int, float], dim: int = DIM) -> np.ndarray:
    vec = np.zeros(dim, dtype=np.float32)
    for idx, value in components.items():
        vec[idx] = value
    return vec / np.linalg.norm(vec)


def face(
    face_id: str,
    embedding: np.ndarray,
    quality: float = 80.0,
    sharpness: float = 20.0,
    eye_visibility: float = 8.0,
    yaw: Optional[float] = 0.0,
    photo_uri: Optional[str] = None,
    photo_timestamp: Optional[int] = START_MS,
    source: EmbeddingSource = EmbeddingSource.FACENET_512,
) -> DetectedFace:
    return DetectedFace(
        face_id=face_id,
        embedding=np.asarray(embedding, dtype=np.float32),
        quality_score=quality,
        sharpness=sharpness,
        eye_visibility=eye_visibility,
        yaw=yaw,
        photo_uri=photo_uri if photo_uri is not None else f"photo-{face_id}.jpg",
        photo_timestamp=photo_timestamp,
        embedding_source=source,
    )


def anchor(
    anchor_id: str,
    cluster_id: str,
    embedding: np.ndarray,
    quality: float = 80.0,
    pose: PoseCategory = PoseCategory.FRONTAL,
    face_id: Optional[str] = None,
) -> ClusterAnchor:
    return ClusterAnchor(
        anchor_id=anchor_id,
        cluster_id=cluster_id,
        face_id=face_id or f"face-{anchor_id}",
        embedding=np.asarray(embedding, dtype=np.float32),
        quality_score=quality,
        sharpness_score=20.0,
        eye_visibility_score=8.0,
        pose_category=pose,
        embedding_source=EmbeddingSource.FACENET_512,
    )


class FakeClock:
    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def seed_cluster(
    store: ClusterStore,
    cluster_id: str,
    faces: Sequence[DetectedFace],
    anchored: Optional[Sequence[str]] = None,
) -> PersonCluster:
    """Store ``faces`` as members of a new cluster; faces in ``anchored`` (default all) become anchors."""
    anchored_ids = set(anchored) if anchored is not None else {f.face_id for f in faces}
    cluster = PersonCluster(cluster_id=cluster_id, created_at=START_MS, updated_at=START_MS)
    with store.transaction() as txn:
        txn.put_cluster(cluster)
        for item in faces:
            tier = QualityTier.ANCHOR if item.face_id in anchored_ids else QualityTier.CLUSTERING
            txn.put_face(item, tier)
            txn.assign(item.face_id, cluster_id)
            if item.face_id in anchored_ids:
                txn.put_anchor(
                    anchor(f"anchor-{item.face_id}", cluster_id, item.embedding, pose=item.pose_category, face_id=item.face_id)
                )
    return cluster


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ids():
    counter = itertools.count(1)
    return lambda: f"id-{next(counter):04d}"


@pytest.fixture
def config():
    return ClusteringConfig(search_workers=2)


@pytest.fixture
def engine(config, clock, ids):
    eng = ClusteringEngine(ClusterStore(), config, EventBus(), clock=clock, id_factory=ids)
    yield eng
    eng.close()


@pytest.fixture
def recorder(engine):
    rec = EventRecorder()
    engine.events.subscribe(rec)
    return rec
