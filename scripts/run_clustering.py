#!/usr/bin/env python3
"""Cluster detected faces into person groups and persist the result."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tqdm import tqdm

from facegroups.config import load_config
from facegroups.engine import ClusteringEngine, ScanProgress, ScanReport, ScanStatus
from facegroups.errors import ScanStateError, StorageUnavailableError
from facegroups.io_utils import dump_json, ensure_dir, setup_logging
from facegroups.storage.tables import clusters_frame, load_detected_faces, load_store, save_store


LOGGER = logging.getLogger("scripts.run_clustering")

CHECKPOINT_NAME = "scan_checkpoint.json"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Group detected faces into person clusters.")
    parser.add_argument("detections", type=Path, help="Parquet file of detected faces (one row per face).")
    parser.add_argument("store_dir", type=Path, help="Directory holding the cluster store tables and journal.")
    parser.add_argument("--config", type=Path, default=None, help="YAML clustering config (see configs/clustering.yaml).")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume the last interrupted scan from its checkpoint instead of starting a new one.",
    )
    parser.add_argument(
        "--min-gap",
        dest="min_evidence_gap",
        type=float,
        default=None,
        help="Override the minimum evidence gap between the best and second-best cluster.",
    )
    parser.add_argument(
        "--min-supporting-anchors",
        type=int,
        default=None,
        help="Override the number of anchors Pass 2 needs above threshold on the multi-anchor path.",
    )
    parser.add_argument(
        "--workers",
        dest="search_workers",
        type=int,
        default=None,
        help="Number of threads used for anchor search (default from config).",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Where to write clusters.json and merge_suggestions.json (default: store_dir).",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "min_evidence_gap": args.min_evidence_gap,
        "min_supporting_anchors": args.min_supporting_anchors,
        "search_workers": args.search_workers,
    }


def _cluster_rows(engine: ClusteringEngine) -> List[Dict[str, Any]]:
    df = clusters_frame(engine.store)
    rows = []
    for record in df.to_dict("records"):
        threshold = record.get("acceptance_threshold")
        rows.append(
            {
                "cluster_id": record["cluster_id"],
                "name": record["name"],
                "person_id": record["person_id"],
                "face_count": int(record["face_count"]),
                "anchor_count": int(record["anchor_count"]),
                "acceptance_threshold": None if threshold is None or threshold != threshold else float(threshold),
                "face_ids": list(record["face_ids"]),
            }
        )
    return rows


def _bridge_rows(report: ScanReport) -> List[Dict[str, Any]]:
    return [
        {
            "cluster_id_a": bridge.cluster_id_a,
            "cluster_id_b": bridge.cluster_id_b,
            "anchor_id_a": bridge.anchor_id_a,
            "anchor_id_b": bridge.anchor_id_b,
            "similarity": round(bridge.similarity, 4),
            "confidence": round(bridge.confidence, 4),
            "pose_a": bridge.pose_a.value,
            "pose_b": bridge.pose_b.value,
        }
        for bridge in report.bridges
    ]


def run(args: argparse.Namespace) -> Dict[str, Any]:
    """Run one scan over ``args.detections`` and write the store plus JSON summaries."""
    if not args.detections.exists():
        raise SystemExit(f"Detections file not found: {args.detections}")
    config = load_config(args.config, overrides=_config_overrides(args))
    faces = load_detected_faces(args.detections)
    if not faces:
        raise SystemExit(f"No detected faces in {args.detections}")

    store_dir = ensure_dir(args.store_dir)
    output_dir = ensure_dir(args.output_dir or store_dir)
    store = load_store(store_dir)

    with ClusteringEngine(store, config, checkpoint_path=store_dir / CHECKPOINT_NAME) as engine:
        bar = None
        if not args.no_progress:
            bar = tqdm(total=len({f.photo_uri or f.face_id for f in faces}), desc="Clustering", unit="photo")

            def _update(progress: ScanProgress) -> None:
                bar.n = progress.scanned_count
                bar.set_postfix(
                    clusters=progress.clusters_created,
                    deferred=progress.deferred_count,
                    phase=progress.phase.value,
                )
                bar.refresh()

            engine.subscribe_progress(_update)
        try:
            report = engine.start_scan(faces, resume=args.resume)
        except ScanStateError as exc:
            raise SystemExit(str(exc)) from exc
        except StorageUnavailableError as exc:
            raise SystemExit(f"Cluster store unavailable: {exc}") from exc
        finally:
            if bar is not None:
                bar.close()

        engine.refresh_statistics(wait=True)
        consistency = engine.check_consistency()
        save_store(engine.store, store_dir)

        clusters = _cluster_rows(engine)
        suggestions = _bridge_rows(report)
        dump_json(output_dir / "clusters.json", clusters)
        dump_json(output_dir / "merge_suggestions.json", suggestions)

        summary = {
            "status": report.progress.status.value,
            "photos": report.progress.total_count,
            "pass1": report.pass1.summary(),
            "pass2": report.pass2.summary() if report.pass2 is not None else None,
            "clusters": len(clusters),
            "merge_suggestions": len(suggestions),
            "consistent": consistency.ok,
        }
    if report.progress.status is ScanStatus.CANCELLED:
        LOGGER.warning("Scan stopped early; rerun with --resume to continue")
    LOGGER.info("Clustering summary: %s", summary)
    return summary


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    run(args)


if __name__ == "__main__":
    main()
