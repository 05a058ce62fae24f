#!/usr/bin/env python3
"""Apply user corrections (merge, split, move, rename, delete, undo, constraints) to a cluster store."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from facegroups.config import load_config
from facegroups.engine import ClusteringEngine
from facegroups.errors import ConstraintViolationError
from facegroups.history.mutations import ClusterHistory
from facegroups.io_utils import setup_logging
from facegroups.storage.tables import load_store, save_store
from facegroups.types import ConstraintType


LOGGER = logging.getLogger("scripts.edit_clusters")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Edit person clusters in a cluster store.")
    parser.add_argument("store_dir", type=Path, help="Directory holding the cluster store tables and journal.")
    parser.add_argument("--config", type=Path, default=None, help="YAML clustering config.")
    sub = parser.add_subparsers(dest="command", required=True)

    merge = sub.add_parser("merge", help="Merge two or more clusters.")
    merge.add_argument("cluster_ids", nargs="+", help="Clusters to merge.")
    merge.add_argument("--into", dest="target_id", default=None, help="Cluster to keep (default: largest).")

    split = sub.add_parser("split", help="Move some faces of a cluster into a new cluster.")
    split.add_argument("cluster_id")
    split.add_argument("face_ids", nargs="+")

    move = sub.add_parser("move", help="Move one face into another cluster.")
    move.add_argument("face_id")
    move.add_argument("target_cluster_id")

    rename = sub.add_parser("rename", help="Name a cluster (empty name clears it).")
    rename.add_argument("cluster_id")
    rename.add_argument("name")
    rename.add_argument("--person-id", default=None)

    delete = sub.add_parser("delete", help="Delete a cluster and release its faces.")
    delete.add_argument("cluster_id")

    undo = sub.add_parser("undo", help="Undo a history entry (default: the most recent undoable one).")
    undo.add_argument("history_id", nargs="?", default=None)

    constrain = sub.add_parser("constrain", help="Declare that two faces must or cannot share a cluster.")
    constrain.add_argument("kind", choices=["must-link", "cannot-link"])
    constrain.add_argument("face_id1")
    constrain.add_argument("face_id2")

    unconstrain = sub.add_parser("unconstrain", help="Remove a constraint by id.")
    unconstrain.add_argument("constraint_id")

    history = sub.add_parser("history", help="List recent undoable operations.")
    history.add_argument("--limit", type=int, default=20)

    return parser.parse_args(argv)


def _describe(entry: ClusterHistory) -> Dict[str, Any]:
    return {
        "history_id": entry.history_id,
        "operation": entry.operation_type.value,
        "cluster_id": entry.cluster_id,
        "source_cluster_id": entry.source_cluster_id,
        "face_id": entry.face_id,
        "timestamp": entry.timestamp,
        "actor": entry.actor,
    }


def _latest_undoable(engine: ClusteringEngine) -> str:
    entries = engine.recent_undoable(limit=1)
    if not entries:
        raise SystemExit("Nothing to undo.")
    return entries[0].history_id


def apply_command(engine: ClusteringEngine, args: argparse.Namespace) -> Any:
    """Dispatch one subcommand against ``engine`` and return a JSON-friendly result."""
    command = args.command
    if command == "merge":
        return _describe(engine.merge_clusters(args.cluster_ids, target_id=args.target_id))
    if command == "split":
        return _describe(engine.split_cluster(args.cluster_id, args.face_ids))
    if command == "move":
        return _describe(engine.move_face(args.face_id, args.target_cluster_id))
    if command == "rename":
        return _describe(engine.rename_cluster(args.cluster_id, args.name, person_id=args.person_id))
    if command == "delete":
        return _describe(engine.delete_cluster(args.cluster_id))
    if command == "undo":
        history_id = args.history_id or _latest_undoable(engine)
        result = engine.undo(history_id)
        return {
            "history_id": result.history_id,
            "applied": result.applied,
            "reason": result.reason,
            "clusters": result.restored_cluster_ids,
        }
    if command == "constrain":
        kind = ConstraintType.MUST_LINK if args.kind == "must-link" else ConstraintType.CANNOT_LINK
        constraint = engine.add_constraint(kind, args.face_id1, args.face_id2)
        return {"constraint_id": constraint.constraint_id, "type": kind.value}
    if command == "unconstrain":
        constraint = engine.remove_constraint(args.constraint_id)
        return {"constraint_id": constraint.constraint_id, "removed": True}
    if command == "history":
        entries: List[Dict[str, Any]] = [_describe(e) for e in engine.recent_undoable(limit=args.limit)]
        return entries
    raise SystemExit(f"Unknown command: {command}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging()
    if not args.store_dir.exists():
        raise SystemExit(f"Store directory not found: {args.store_dir}")
    config = load_config(args.config)
    store = load_store(args.store_dir)
    with ClusteringEngine(store, config) as engine:
        try:
            result = apply_command(engine, args)
        except (KeyError, ValueError, ConstraintViolationError) as exc:
            raise SystemExit(f"{args.command} failed: {exc}") from exc
        engine.refresh_statistics(wait=True)
        if args.command != "history":
            save_store(engine.store, args.store_dir)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
