"""Parquet snapshots of the store plus journal replay, and detection input loading."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List

import pandas as pd

from facegroups.io_utils import ensure_dir
from facegroups.storage.journal import JournalSink
from facegroups.storage.records import (
    anchor_from_record,
    anchor_to_record,
    cluster_from_record,
    cluster_to_record,
    constraint_from_record,
    constraint_to_record,
    face_from_record,
    face_to_record,
    history_from_record,
    history_to_record,
    opt_str,
    statistics_from_record,
    statistics_to_record,
    stored_face_from_record,
)
from facegroups.storage.store import ClusterStore, StoreOp
from facegroups.types import DetectedFace

LOGGER = logging.getLogger("facegroups.storage.tables")

JOURNAL_NAME = "journal.jsonl"
REQUIRED_DETECTION_COLUMNS = ("face_id", "embedding", "quality_score", "sharpness", "eye_visibility")


def _write_table(path: Path, rows: List[Dict[str, Any]]) -> None:
    if not rows:
        if path.exists():
            path.unlink()
        return
    df = pd.DataFrame(rows)
    tmp_path = path.with_suffix(".parquet.tmp")
    df.to_parquet(tmp_path, index=False)
    os.replace(tmp_path, path)


def _read_table(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    df = pd.read_parquet(path)
    return df.to_dict("records")


def save_store(store: ClusterStore, directory: Path) -> Dict[str, Path]:
    """Write every table as parquet and reset the journal they now contain."""
    ensure_dir(directory)
    assignments = store.assignments()
    face_rows = []
    for stored in store.faces():
        record = face_to_record(stored)
        record["cluster_id"] = assignments.get(stored.face_id)
        face_rows.append(record)
    tables = {
        "faces": face_rows,
        "clusters": [cluster_to_record(c) for c in store.clusters(include_deleted=True)],
        "anchors": [anchor_to_record(a) for a in store.all_anchors()],
        "statistics": [statistics_to_record(s) for s in store.statistics()],
        "constraints": [constraint_to_record(c) for c in store.constraints()],
        "history": [history_to_record(h) for h in store.history()],
    }
    written = {}
    for name, rows in tables.items():
        path = directory / f"{name}.parquet"
        _write_table(path, rows)
        written[name] = path
    JournalSink(directory / JOURNAL_NAME).truncate()
    LOGGER.info(
        "Saved store to %s: %d faces, %d clusters, %d anchors",
        directory,
        len(face_rows),
        len(tables["clusters"]),
        len(tables["anchors"]),
    )
    return written


def _snapshot_ops(directory: Path) -> Iterable[StoreOp]:
    loaders: Dict[str, Callable[[Dict[str, Any]], Any]] = {
        "clusters": cluster_from_record,
        "anchors": anchor_from_record,
        "statistics": statistics_from_record,
        "constraints": constraint_from_record,
        "history": history_from_record,
    }
    key_fields = {
        "clusters": "cluster_id",
        "anchors": "anchor_id",
        "statistics": "cluster_id",
        "constraints": "constraint_id",
        "history": "history_id",
    }
    for row in _read_table(directory / "faces.parquet"):
        stored = stored_face_from_record(row)
        yield StoreOp("faces", stored.face_id, stored)
    for name, loader in loaders.items():
        for row in _read_table(directory / f"{name}.parquet"):
            yield StoreOp(name, str(row[key_fields[name]]), loader(row))
    for row in _read_table(directory / "faces.parquet"):
        cluster_id = opt_str(row.get("cluster_id"))
        if cluster_id is not None:
            yield StoreOp("assignments", str(row["face_id"]), cluster_id)


def load_store(directory: Path, attach_journal: bool = True) -> ClusterStore:
    """Rebuild a store from its parquet tables and replay the journal written since."""
    directory = Path(directory)
    store = ClusterStore()
    if directory.exists():
        store.apply(_snapshot_ops(directory))
    journal = JournalSink(directory / JOURNAL_NAME)
    replayed = 0
    if journal.path.exists():
        for ops in journal.replay():
            store.apply(ops)
            replayed += 1
    store.pop_dirty_clusters()
    if attach_journal:
        store.sink = journal
    LOGGER.info(
        "Loaded store from %s: %d clusters, %d anchors (%d journal transactions replayed)",
        directory,
        len(store.clusters()),
        len(store.anchors()),
        replayed,
    )
    return store


def load_detected_faces(path: Path) -> List[DetectedFace]:
    """Read detection records from parquet, keeping file order (photo-acquisition order)."""
    df = pd.read_parquet(path)
    missing = [col for col in REQUIRED_DETECTION_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"{path} is missing detection columns: {missing}")
    faces = [face_from_record(row) for row in df.to_dict("records")]
    LOGGER.info("Loaded %d detected faces from %s", len(faces), path)
    return faces


def clusters_frame(store: ClusterStore) -> pd.DataFrame:
    """One row per live cluster with its size, anchors and adaptive threshold."""
    rows = []
    for cluster in store.clusters():
        stats = store.get_statistics(cluster.cluster_id)
        rows.append(
            {
                "cluster_id": cluster.cluster_id,
                "name": cluster.name,
                "person_id": cluster.person_id,
                "face_count": store.member_count(cluster.cluster_id),
                "anchor_count": len(store.anchors(cluster.cluster_id)),
                "acceptance_threshold": stats.acceptance_threshold if stats is not None else None,
                "face_ids": store.members(cluster.cluster_id),
            }
        )
    df = pd.DataFrame(rows, columns=[
        "cluster_id", "name", "person_id", "face_count", "anchor_count", "acceptance_threshold", "face_ids",
    ])
    return df.sort_values(["face_count", "cluster_id"], ascending=[False, True]).reset_index(drop=True)
