"""Clustering engine control surface: scans, user edits, undo and constraints."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set

from facegroups.clustering.constraints import ConstraintEnforcer
from facegroups.clustering.control import ScanControl
from facegroups.clustering.pass1 import Pass1Assigner, Pass1Result
from facegroups.clustering.pass2 import Pass2Resolver, Pass2Result
from facegroups.config import ClusteringConfig
from facegroups.errors import InvalidEmbeddingError, ScanStateError, StorageUnavailableError
from facegroups.events import EventBus
from facegroups.history.mutations import ClusterHistory, MutationLog, UndoResult, new_id, now_ms
from facegroups.io_utils import dump_json, ensure_dir, load_json
from facegroups.quality.tiers import classify_face
from facegroups.recognition.anchor_index import AnchorIndex
from facegroups.recognition.bridges import find_pose_bridges
from facegroups.recognition.statistics import StatisticsRefresher
from facegroups.recognition.zones import SimilarityDecisionModel
from facegroups.storage.store import ClusterStore, ConsistencyReport
from facegroups.types import (
    ClusteringConstraint,
    ConstraintType,
    DeferredFace,
    DetectedFace,
    PoseBridge,
    validate_embedding,
)

LOGGER = logging.getLogger("facegroups.engine")

CHECKPOINT_EVERY = 50


def _in_arrival_order(recorded: Sequence[str], deferred: Sequence[DeferredFace]) -> List[str]:
    """Checkpointed deferrals first, then this run's, each id once."""
    return list(dict.fromkeys([*recorded, *(d.face_id for d in deferred)]))


class ScanStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


class ScanPhase(str, Enum):
    PASS1 = "PASS1"
    PASS2 = "PASS2"
    DONE = "DONE"


@dataclass
class ScanProgress:
    """Counters for presentation only."""

    total_count: int = 0
    scanned_count: int = 0
    faces_found: int = 0
    clusters_created: int = 0
    deferred_count: int = 0
    status: ScanStatus = ScanStatus.IDLE
    phase: ScanPhase = ScanPhase.PASS1
    error_message: Optional[str] = None


@dataclass
class ScanCheckpoint:
    scan_id: str
    phase: ScanPhase
    processed_face_ids: List[str] = field(default_factory=list)
    deferred_face_ids: List[str] = field(default_factory=list)
    pass2_processed_face_ids: List[str] = field(default_factory=list)
    progress: Dict[str, object] = field(default_factory=dict)
    updated_at: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ScanCheckpoint":
        return cls(
            scan_id=str(data["scan_id"]),
            phase=ScanPhase(data["phase"]),
            processed_face_ids=list(data.get("processed_face_ids", [])),
            deferred_face_ids=list(data.get("deferred_face_ids", [])),
            pass2_processed_face_ids=list(data.get("pass2_processed_face_ids", [])),
            progress=dict(data.get("progress", {})),
            updated_at=int(data.get("updated_at", 0)),
        )


@dataclass
class ScanReport:
    progress: ScanProgress
    pass1: Pass1Result
    pass2: Optional[Pass2Result] = None

    @property
    def bridges(self) -> List[PoseBridge]:
        return self.pass2.bridges if self.pass2 is not None else []


@dataclass
class _ScanRun:
    scan_id: str
    faces: List[DetectedFace]
    control: ScanControl
    checkpoint: ScanCheckpoint
    processed: Set[str]
    photos_seen: Set[str]
    pass1: Pass1Result = field(default_factory=Pass1Result)
    pass2: Optional[Pass2Result] = None


class ClusteringEngine:
    """Owns the store, the anchor index and both passes; one scan at a time."""

    def __init__(
        self,
        store: Optional[ClusterStore] = None,
        config: Optional[ClusteringConfig] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        checkpoint_path: Optional[Path] = None,
    ) -> None:
        self.config = config or ClusteringConfig()
        self.store = store or ClusterStore()
        self.events = events or EventBus()
        self.clock = clock or now_ms
        self.id_factory = id_factory or new_id
        raw_checkpoint = checkpoint_path or self.config.checkpoint_path
        self.checkpoint_path = Path(raw_checkpoint) if raw_checkpoint else None

        self.index = AnchorIndex(self.store, self.config)
        self.model = SimilarityDecisionModel(self.config)
        self.enforcer = ConstraintEnforcer(self.store, clock=self.clock, id_factory=self.id_factory)
        self.mutations = MutationLog(
            self.store, self.config, enforcer=self.enforcer, clock=self.clock, id_factory=self.id_factory
        )
        self.pass1 = Pass1Assigner(
            self.store, self.index, self.mutations, self.enforcer, self.config, self.model, self.events
        )
        self.pass2 = Pass2Resolver(
            self.store, self.index, self.mutations, self.enforcer, self.config, self.model, self.events
        )
        self.refresher = StatisticsRefresher(self.store, self.config, clock=self.clock)

        self._state = threading.Condition()
        self._progress = ScanProgress()
        self._run: Optional[_ScanRun] = None
        self._progress_listeners: List[Callable[[ScanProgress], None]] = []
        self._scan_executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------ lifecycle
    def close(self) -> None:
        if self._run is not None:
            self._run.control.cancel()
        if self._scan_executor is not None:
            self._scan_executor.shutdown(wait=True)
        self.refresher.shutdown(wait=True)

    def __enter__(self) -> "ClusteringEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def progress(self) -> ScanProgress:
        with self._state:
            return replace(self._progress)

    def subscribe_progress(self, listener: Callable[[ScanProgress], None]) -> None:
        self._progress_listeners.append(listener)

    def wait_for_status(self, statuses: Sequence[ScanStatus], timeout: Optional[float] = None) -> bool:
        wanted = set(statuses)
        with self._state:
            return self._state.wait_for(lambda: self._progress.status in wanted, timeout=timeout)

    def _set_progress(self, **changes) -> None:
        with self._state:
            self._progress = replace(self._progress, **changes)
            snapshot = replace(self._progress)
            self._state.notify_all()
        for listener in list(self._progress_listeners):
            try:
                listener(snapshot)
            except Exception as exc:  # pragma: no cover - runtime guard
                LOGGER.warning("Progress listener failed: %s", exc)

    # ------------------------------------------------------------------ scan control
    def start_scan(self, faces: Sequence[DetectedFace], resume: bool = False) -> ScanReport:
        """Run one scan batch to completion (or until paused and cancelled) on this thread."""
        return self._execute(self._begin(faces, resume))

    def start_scan_async(self, faces: Sequence[DetectedFace], resume: bool = False) -> "Future[ScanReport]":
        run = self._begin(faces, resume)
        if self._scan_executor is None:
            self._scan_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scan")
        return self._scan_executor.submit(self._execute, run)

    def pause_scan(self) -> None:
        run = self._active_run()
        run.control.pause()
        LOGGER.info("Pause requested for scan %s", run.scan_id)

    def resume_scan(self) -> None:
        run = self._active_run()
        if not run.control.paused:
            raise ScanStateError("Scan is not paused")
        run.control.resume()

    def cancel_scan(self) -> None:
        run = self._active_run()
        run.control.cancel()
        LOGGER.info("Cancel requested for scan %s", run.scan_id)

    def _active_run(self) -> _ScanRun:
        with self._state:
            if self._run is None:
                raise ScanStateError("No scan is running")
            return self._run

    def _begin(self, faces: Sequence[DetectedFace], resume: bool) -> _ScanRun:
        checkpoint = None
        if resume:
            checkpoint = self.load_checkpoint()
            if checkpoint is None:
                raise ScanStateError("No checkpoint to resume from")
            if checkpoint.phase is ScanPhase.DONE:
                raise ScanStateError(f"Scan {checkpoint.scan_id} already completed")
        with self._state:
            if self._run is not None:
                raise ScanStateError("A scan is already running")
            scan_id = checkpoint.scan_id if checkpoint else self.id_factory()
            if checkpoint is None:
                checkpoint = ScanCheckpoint(scan_id=scan_id, phase=ScanPhase.PASS1)
            faces = list(faces)
            processed = set(checkpoint.processed_face_ids)
            photos_seen = {f.photo_uri or f.face_id for f in faces if f.face_id in processed}
            control = ScanControl(on_pause=self._on_pause, on_resume=self._on_resume)
            self._run = _ScanRun(
                scan_id=scan_id,
                faces=faces,
                control=control,
                checkpoint=checkpoint,
                processed=processed,
                photos_seen=photos_seen,
            )
            counters = checkpoint.progress
            self._progress = ScanProgress(
                total_count=len({f.photo_uri or f.face_id for f in faces}),
                scanned_count=len(photos_seen),
                faces_found=int(counters.get("faces_found", 0)),
                clusters_created=int(counters.get("clusters_created", 0)),
                deferred_count=len(checkpoint.deferred_face_ids),
                status=ScanStatus.RUNNING,
                phase=checkpoint.phase,
            )
            self._state.notify_all()
        LOGGER.info(
            "%s scan %s over %d faces (%d already processed)",
            "Resuming" if resume else "Starting",
            scan_id,
            len(faces),
            len(processed),
        )
        return self._run

    def _execute(self, run: _ScanRun) -> ScanReport:
        try:
            report = self._scan(run)
        except StorageUnavailableError as exc:
            LOGGER.error("Scan %s aborted: %s", run.scan_id, exc)
            self._set_progress(status=ScanStatus.FAILED, error_message=str(exc))
            self._save_checkpoint(run)
            raise
        except Exception as exc:
            LOGGER.error("Scan %s failed: %s", run.scan_id, exc)
            self._set_progress(status=ScanStatus.FAILED, error_message=str(exc))
            self._save_checkpoint(run)
            raise
        finally:
            with self._state:
                self._run = None
                self._state.notify_all()
        return report

    def _scan(self, run: _ScanRun) -> ScanReport:
        checkpoint = run.checkpoint
        if checkpoint.phase is ScanPhase.PASS1:
            pending = [f for f in run.faces if f.face_id not in run.processed]
            self.pass1.run(
                pending,
                control=run.control,
                on_processed=lambda face: self._after_pass1_face(run, face),
                result=run.pass1,
            )
            checkpoint.deferred_face_ids = _in_arrival_order(checkpoint.deferred_face_ids, run.pass1.deferred)
            if run.pass1.stopped:
                return self._stopped(run)
            checkpoint.phase = ScanPhase.PASS2
            self._set_progress(phase=ScanPhase.PASS2, deferred_count=len(checkpoint.deferred_face_ids))
            self._save_checkpoint(run)

        # Pass 2 must see fresh adaptive thresholds; nothing commits while this runs.
        self.refresher.refresh_now(self.store.pop_dirty_clusters())

        deferred = self._rebuild_deferred(run)
        run.pass2 = Pass2Result()
        result = self.pass2.run(
            deferred,
            run.faces,
            control=run.control,
            on_processed=lambda item: self._after_pass2_face(run, item),
            result=run.pass2,
        )
        if result.stopped:
            return self._stopped(run)

        self.refresher.schedule_dirty()
        checkpoint.phase = ScanPhase.DONE
        self._set_progress(
            status=ScanStatus.COMPLETED,
            phase=ScanPhase.DONE,
            scanned_count=self._progress.total_count,
            deferred_count=len(result.unresolved),
        )
        self._save_checkpoint(run)
        LOGGER.info(
            "Scan %s completed: pass1=%s pass2=%s",
            run.scan_id,
            run.pass1.summary(),
            result.summary(),
        )
        return ScanReport(progress=self.progress, pass1=run.pass1, pass2=result)

    def _stopped(self, run: _ScanRun) -> ScanReport:
        self._set_progress(status=ScanStatus.CANCELLED)
        self._save_checkpoint(run)
        LOGGER.info("Scan %s cancelled; checkpoint kept for resume", run.scan_id)
        return ScanReport(progress=self.progress, pass1=run.pass1, pass2=run.pass2)

    def _rebuild_deferred(self, run: _ScanRun) -> List[DeferredFace]:
        """Deferred faces from this run plus those recorded in a checkpoint."""
        done = set(run.checkpoint.pass2_processed_face_ids)
        by_id = {d.face_id: d for d in run.pass1.deferred}
        faces = {f.face_id: f for f in run.faces}
        deferred = []
        for face_id in run.checkpoint.deferred_face_ids:
            if face_id in done or self.store.cluster_of(face_id) is not None:
                continue
            item = by_id.get(face_id)
            if item is None:
                face = faces.get(face_id)
                if face is None:
                    stored = self.store.get_face(face_id)
                    if stored is None:
                        continue
                    face, tier = stored.face, stored.tier
                else:
                    try:
                        face = replace(face, embedding=validate_embedding(face.embedding, face.embedding_source))
                    except InvalidEmbeddingError:
                        continue
                    tier = classify_face(face, self.config)
                item = DeferredFace(face=face, tier=tier, reason="resumed")
            deferred.append(item)
        return deferred

    def _after_pass1_face(self, run: _ScanRun, face: DetectedFace) -> None:
        run.processed.add(face.face_id)
        run.checkpoint.processed_face_ids.append(face.face_id)
        run.photos_seen.add(face.photo_uri or face.face_id)
        found = 0 if face.face_id in run.pass1.rejected else 1
        self._set_progress(
            scanned_count=len(run.photos_seen),
            faces_found=self._progress.faces_found + found,
            clusters_created=int(run.checkpoint.progress.get("clusters_created", 0)) + len(run.pass1.created),
            deferred_count=len(run.checkpoint.deferred_face_ids) + len(run.pass1.deferred),
        )
        if len(run.checkpoint.processed_face_ids) % CHECKPOINT_EVERY == 0:
            self._save_checkpoint(run)

    def _after_pass2_face(self, run: _ScanRun, item: DeferredFace) -> None:
        run.checkpoint.pass2_processed_face_ids.append(item.face_id)

    def _on_pause(self) -> None:
        run = self._run
        if run is not None:
            self._save_checkpoint(run)
        self._set_progress(status=ScanStatus.PAUSED)

    def _on_resume(self) -> None:
        self._set_progress(status=ScanStatus.RUNNING)

    # ------------------------------------------------------------------ checkpoints
    def _save_checkpoint(self, run: _ScanRun) -> None:
        if self.checkpoint_path is None:
            return
        progress = self.progress
        run.checkpoint.deferred_face_ids = _in_arrival_order(run.checkpoint.deferred_face_ids, run.pass1.deferred)
        run.checkpoint.progress = {
            "faces_found": progress.faces_found,
            "clusters_created": progress.clusters_created,
            "status": progress.status.value,
        }
        run.checkpoint.updated_at = self.clock()
        try:
            ensure_dir(self.checkpoint_path.parent)
            dump_json(self.checkpoint_path, asdict(run.checkpoint))
        except OSError as exc:
            LOGGER.warning("Could not write scan checkpoint %s: %s", self.checkpoint_path, exc)

    def load_checkpoint(self) -> Optional[ScanCheckpoint]:
        if self.checkpoint_path is None or not self.checkpoint_path.exists():
            return None
        return ScanCheckpoint.from_dict(load_json(self.checkpoint_path))

    # ------------------------------------------------------------------ user operations
    def merge_clusters(self, cluster_ids: Sequence[str], target_id: Optional[str] = None) -> ClusterHistory:
        entry = self.mutations.merge_clusters(cluster_ids, target_id=target_id)
        self.refresher.schedule_dirty()
        return entry

    def split_cluster(self, cluster_id: str, face_ids: Sequence[str]) -> ClusterHistory:
        entry = self.mutations.split_cluster(cluster_id, face_ids)
        self.refresher.schedule_dirty()
        return entry

    def move_face(self, face_id: str, target_cluster_id: str) -> ClusterHistory:
        with self.store.locked_clusters([self.store.cluster_of(face_id), target_cluster_id]):
            entry = self.mutations.move_face(face_id, target_cluster_id, actor="user")
        self.refresher.schedule_dirty()
        return entry

    def delete_cluster(self, cluster_id: str) -> ClusterHistory:
        entry = self.mutations.delete_cluster(cluster_id)
        self.refresher.cancel(cluster_id)
        self.refresher.schedule_dirty()
        return entry

    def rename_cluster(self, cluster_id: str, name: Optional[str], person_id: Optional[str] = None) -> ClusterHistory:
        return self.mutations.rename_cluster(cluster_id, name, person_id=person_id)

    def undo(self, history_id: str) -> UndoResult:
        result = self.mutations.undo(history_id)
        if result.applied:
            self.refresher.schedule_dirty()
        return result

    def recent_undoable(self, limit: int = 20) -> List[ClusterHistory]:
        return self.mutations.recent_undoable(limit)

    def purge_expired_history(self, now: Optional[int] = None) -> int:
        return self.mutations.purge_expired_history(now)

    def add_constraint(
        self, constraint_type: ConstraintType, face_id1: str, face_id2: str, created_by: str = "user"
    ) -> ClusteringConstraint:
        return self.enforcer.add_constraint(constraint_type, face_id1, face_id2, created_by=created_by)

    def remove_constraint(self, constraint_id: str) -> ClusteringConstraint:
        return self.enforcer.remove_constraint(constraint_id)

    def pose_bridges(self) -> List[PoseBridge]:
        return find_pose_bridges(self.index.snapshot(), self.enforcer, self.config)

    def check_consistency(self) -> ConsistencyReport:
        return self.store.check_consistency()

    def refresh_statistics(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        self.refresher.schedule_dirty()
        if wait:
            self.refresher.drain(timeout=timeout)
