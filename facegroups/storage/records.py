"""Plain-dict records for store entities, shared by the journal and parquet tables."""

from __future__ import annotations

import json
import math
from typing import Any, Dict, Optional

import numpy as np

from facegroups.history.mutations import ClusterHistory, payload_from_dict, payload_to_dict
from facegroups.storage.store import StoredFace, StoreOp
from facegroups.types import (
    ClusterAnchor,
    ClusteringConstraint,
    ClusterStatistics,
    ConstraintType,
    DetectedFace,
    EmbeddingSource,
    OperationType,
    PersonCluster,
    PoseCategory,
    QualityTier,
)


def _normalize_embedding(raw) -> np.ndarray:
    """Convert a parquet or JSON embedding value into a 1D float32 vector."""
    if isinstance(raw, np.ndarray):
        if raw.dtype == object or raw.ndim > 1:
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = raw.astype(np.float32)
    elif isinstance(raw, list):
        if raw and isinstance(raw[0], (list, tuple, np.ndarray)):
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = np.asarray(raw, dtype=np.float32)
    else:
        arr = np.asarray(raw, dtype=np.float32)
    return arr.reshape(-1).astype(np.float32)


def _missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def opt_float(value: Any) -> Optional[float]:
    return None if _missing(value) else float(value)


def opt_int(value: Any) -> Optional[int]:
    return None if _missing(value) else int(value)


def opt_str(value: Any) -> Optional[str]:
    return None if _missing(value) else str(value)


# ---------------------------------------------------------------------- faces
def face_to_record(stored: StoredFace) -> Dict[str, Any]:
    face = stored.face
    return {
        "face_id": face.face_id,
        "embedding": np.asarray(face.embedding, dtype=np.float32).tolist(),
        "quality_score": float(face.quality_score),
        "sharpness": float(face.sharpness),
        "eye_visibility": float(face.eye_visibility),
        "yaw": opt_float(face.yaw),
        "roll": opt_float(face.roll),
        "photo_uri": face.photo_uri,
        "photo_timestamp": opt_int(face.photo_timestamp),
        "embedding_source": face.embedding_source.value,
        "bbox": [float(v) for v in face.bbox],
        "tier": stored.tier.value,
    }


def face_from_record(row: Dict[str, Any]) -> DetectedFace:
    bbox = row.get("bbox")
    return DetectedFace(
        face_id=str(row["face_id"]),
        embedding=_normalize_embedding(row["embedding"]),
        quality_score=float(row.get("quality_score", 0.0)),
        sharpness=float(row.get("sharpness", 0.0)),
        eye_visibility=float(row.get("eye_visibility", 0.0)),
        yaw=opt_float(row.get("yaw")),
        roll=opt_float(row.get("roll")),
        photo_uri=opt_str(row.get("photo_uri")) or "",
        photo_timestamp=opt_int(row.get("photo_timestamp")),
        embedding_source=EmbeddingSource.from_tag(opt_str(row.get("embedding_source"))),
        bbox=tuple(float(v) for v in bbox) if bbox is not None and len(bbox) == 4 else (0.0, 0.0, 0.0, 0.0),
    )


def stored_face_from_record(row: Dict[str, Any]) -> StoredFace:
    return StoredFace(face=face_from_record(row), tier=QualityTier(row["tier"]))


# ---------------------------------------------------------------------- clusters / anchors
def cluster_to_record(cluster: PersonCluster) -> Dict[str, Any]:
    return {
        "cluster_id": cluster.cluster_id,
        "person_id": cluster.person_id,
        "name": cluster.name,
        "is_deleted": bool(cluster.is_deleted),
        "created_at": int(cluster.created_at),
        "updated_at": int(cluster.updated_at),
    }


def cluster_from_record(row: Dict[str, Any]) -> PersonCluster:
    return PersonCluster(
        cluster_id=str(row["cluster_id"]),
        person_id=opt_str(row.get("person_id")),
        name=opt_str(row.get("name")),
        is_deleted=bool(row.get("is_deleted", False)),
        created_at=opt_int(row.get("created_at")) or 0,
        updated_at=opt_int(row.get("updated_at")) or 0,
    )


def anchor_to_record(anchor: ClusterAnchor) -> Dict[str, Any]:
    return {
        "anchor_id": anchor.anchor_id,
        "cluster_id": anchor.cluster_id,
        "face_id": anchor.face_id,
        "embedding": np.asarray(anchor.embedding, dtype=np.float32).tolist(),
        "quality_score": float(anchor.quality_score),
        "sharpness_score": float(anchor.sharpness_score),
        "eye_visibility_score": float(anchor.eye_visibility_score),
        "pose_category": anchor.pose_category.value,
        "yaw": float(anchor.yaw),
        "roll": float(anchor.roll),
        "embedding_source": anchor.embedding_source.value,
        "intra_cluster_mean_similarity": float(anchor.intra_cluster_mean_similarity),
        "is_active": bool(anchor.is_active),
        "match_count": int(anchor.match_count),
        "last_matched_at": int(anchor.last_matched_at),
        "created_at": int(anchor.created_at),
    }


def anchor_from_record(row: Dict[str, Any]) -> ClusterAnchor:
    return ClusterAnchor(
        anchor_id=str(row["anchor_id"]),
        cluster_id=str(row["cluster_id"]),
        face_id=str(row["face_id"]),
        embedding=_normalize_embedding(row["embedding"]),
        quality_score=float(row["quality_score"]),
        sharpness_score=float(row["sharpness_score"]),
        eye_visibility_score=float(row["eye_visibility_score"]),
        pose_category=PoseCategory(row["pose_category"]),
        yaw=float(row.get("yaw") or 0.0),
        roll=float(row.get("roll") or 0.0),
        embedding_source=EmbeddingSource.from_tag(opt_str(row.get("embedding_source"))),
        intra_cluster_mean_similarity=float(row.get("intra_cluster_mean_similarity") or 0.0),
        is_active=bool(row.get("is_active", True)),
        match_count=opt_int(row.get("match_count")) or 0,
        last_matched_at=opt_int(row.get("last_matched_at")) or 0,
        created_at=opt_int(row.get("created_at")) or 0,
    )


def statistics_to_record(stats: ClusterStatistics) -> Dict[str, Any]:
    return {
        "cluster_id": stats.cluster_id,
        "mean_similarity": stats.mean_similarity,
        "variance": stats.variance,
        "std_dev": stats.std_dev,
        "min_similarity": stats.min_similarity,
        "max_similarity": stats.max_similarity,
        "acceptance_threshold": stats.acceptance_threshold,
        "anchor_count": stats.anchor_count,
        "total_face_count": stats.total_face_count,
        # parquet has no natural map column; keep it as JSON text
        "pose_distribution": json.dumps(stats.pose_distribution, sort_keys=True),
        "sample_count": stats.sample_count,
        "last_updated_at": stats.last_updated_at,
    }


def statistics_from_record(row: Dict[str, Any]) -> ClusterStatistics:
    poses = row.get("pose_distribution") or "{}"
    if isinstance(poses, str):
        poses = json.loads(poses)
    return ClusterStatistics(
        cluster_id=str(row["cluster_id"]),
        mean_similarity=float(row["mean_similarity"]),
        variance=float(row["variance"]),
        std_dev=float(row["std_dev"]),
        min_similarity=float(row["min_similarity"]),
        max_similarity=float(row["max_similarity"]),
        acceptance_threshold=float(row["acceptance_threshold"]),
        anchor_count=int(row["anchor_count"]),
        total_face_count=int(row["total_face_count"]),
        pose_distribution={str(k): int(v) for k, v in poses.items()},
        sample_count=opt_int(row.get("sample_count")) or 0,
        last_updated_at=opt_int(row.get("last_updated_at")) or 0,
    )


# ---------------------------------------------------------------------- constraints / history
def constraint_to_record(constraint: ClusteringConstraint) -> Dict[str, Any]:
    return {
        "constraint_id": constraint.constraint_id,
        "constraint_type": constraint.constraint_type.value,
        "face_id1": constraint.face_id1,
        "face_id2": constraint.face_id2,
        "created_at": int(constraint.created_at),
        "created_by": constraint.created_by,
    }


def constraint_from_record(row: Dict[str, Any]) -> ClusteringConstraint:
    return ClusteringConstraint(
        constraint_id=str(row["constraint_id"]),
        constraint_type=ConstraintType(row["constraint_type"]),
        face_id1=str(row["face_id1"]),
        face_id2=str(row["face_id2"]),
        created_at=opt_int(row.get("created_at")) or 0,
        created_by=opt_str(row.get("created_by")) or "user",
    )


def history_to_record(entry: ClusterHistory) -> Dict[str, Any]:
    return {
        "history_id": entry.history_id,
        "operation_type": entry.operation_type.value,
        "timestamp": int(entry.timestamp),
        "cluster_id": entry.cluster_id,
        "source_cluster_id": entry.source_cluster_id,
        "face_id": entry.face_id,
        "previous_name": entry.previous_name,
        "undo_data": json.dumps(payload_to_dict(entry.payload), sort_keys=True),
        "can_undo": bool(entry.can_undo),
        "expires_at": entry.expires_at,
        "undone_at": entry.undone_at,
        "actor": entry.actor,
        "sequence": int(entry.sequence),
    }


def history_from_record(row: Dict[str, Any]) -> ClusterHistory:
    operation = OperationType(row["operation_type"])
    undo_data = row["undo_data"]
    if isinstance(undo_data, str):
        undo_data = json.loads(undo_data)
    return ClusterHistory(
        history_id=str(row["history_id"]),
        operation_type=operation,
        timestamp=int(row["timestamp"]),
        cluster_id=str(row["cluster_id"]),
        payload=payload_from_dict(operation, undo_data),
        source_cluster_id=opt_str(row.get("source_cluster_id")),
        face_id=opt_str(row.get("face_id")),
        previous_name=opt_str(row.get("previous_name")),
        can_undo=bool(row.get("can_undo", True)),
        expires_at=opt_int(row.get("expires_at")),
        undone_at=opt_int(row.get("undone_at")),
        actor=opt_str(row.get("actor")) or "user",
        sequence=opt_int(row.get("sequence")) or 0,
    )


# ---------------------------------------------------------------------- journal ops
_ENCODERS = {
    "faces": face_to_record,
    "clusters": cluster_to_record,
    "anchors": anchor_to_record,
    "statistics": statistics_to_record,
    "constraints": constraint_to_record,
    "history": history_to_record,
}

_DECODERS = {
    "faces": stored_face_from_record,
    "clusters": cluster_from_record,
    "anchors": anchor_from_record,
    "statistics": statistics_from_record,
    "constraints": constraint_from_record,
    "history": history_from_record,
}


def op_to_record(op: StoreOp) -> Dict[str, Any]:
    value = op.value
    if value is not None:
        encoder = _ENCODERS.get(op.table)
        if encoder is not None:
            value = encoder(value)
        elif op.table == "anchor_matches":
            value = list(value)
    return {"table": op.table, "key": op.key, "value": value}


def op_from_record(record: Dict[str, Any]) -> StoreOp:
    table = record["table"]
    value = record.get("value")
    if value is not None:
        decoder = _DECODERS.get(table)
        if decoder is not None:
            value = decoder(value)
        elif table == "anchor_matches":
            value = (int(value[0]), int(value[1]))
    return StoreOp(table=table, key=str(record["key"]), value=value)
