from pathlib import Path

import pytest

from facegroups.config import ClusteringConfig
from facegroups.engine import ClusteringEngine, ScanPhase, ScanStatus
from facegroups.errors import ScanStateError, StorageUnavailableError
from facegroups.events import EventBus, EventKind
from facegroups.io_utils import load_json
from facegroups.storage.store import ClusterStore

from conftest import START_MS, face, unit


def _batch():
    # two people over three photos; "p2.jpg" holds one face of each
    return [
        face("a1", unit({0: 1.0}), photo_uri="p1.jpg"),
        face("b1", unit({1: 1.0}), photo_uri="p2.jpg"),
        face("a2", unit({0: 0.9, 2: 0.43589}), photo_uri="p2.jpg"),
        face("b2", unit({1: 0.9, 3: 0.43589}), photo_uri="p3.jpg"),
        face("a3", unit({0: 0.85, 2: 0.52678}), photo_uri="p3.jpg"),
    ]


@pytest.fixture
def checkpointed(tmp_path, clock, ids):
    eng = ClusteringEngine(
        ClusterStore(),
        ClusteringConfig(search_workers=1),
        EventBus(),
        clock=clock,
        id_factory=ids,
        checkpoint_path=tmp_path / "scan_checkpoint.json",
    )
    yield eng
    eng.close()


def test_scan_groups_faces_and_reports_progress(engine):
    seen = []
    engine.subscribe_progress(seen.append)

    report = engine.start_scan(_batch())

    store = engine.store
    assert store.cluster_of("a2") == store.cluster_of("a1") == store.cluster_of("a3")
    assert store.cluster_of("b2") == store.cluster_of("b1")
    assert store.cluster_of("a1") != store.cluster_of("b1")
    assert report.progress.status is ScanStatus.COMPLETED
    assert report.progress.phase is ScanPhase.DONE
    assert report.progress.total_count == 3
    assert report.progress.scanned_count == 3
    assert report.progress.faces_found == 5
    assert report.progress.clusters_created == 2
    assert seen[-1].status is ScanStatus.COMPLETED
    assert engine.progress.status is ScanStatus.COMPLETED


def test_statistics_are_refreshed_after_a_scan(engine):
    engine.start_scan(_batch())
    engine.refresh_statistics(wait=True, timeout=5)

    cluster_a = engine.store.cluster_of("a1")
    stats = engine.store.get_statistics(cluster_a)
    assert stats is not None
    assert stats.anchor_count == 3
    assert 0.45 <= stats.acceptance_threshold <= 0.65


def test_cancel_then_resume_finishes_the_batch(checkpointed):
    engine = checkpointed
    faces = _batch()

    def _cancel_once(event):
        if event.kind is EventKind.CLUSTER_CREATED:
            unsubscribe()
            engine.cancel_scan()

    unsubscribe = engine.events.subscribe(_cancel_once)

    first = engine.start_scan(faces)

    assert first.progress.status is ScanStatus.CANCELLED
    checkpoint = load_json(engine.checkpoint_path)
    assert checkpoint["processed_face_ids"] == ["a1"]
    assert checkpoint["phase"] == "PASS1"
    assert engine.store.cluster_of("b1") is None

    second = engine.start_scan(faces, resume=True)

    assert second.progress.status is ScanStatus.COMPLETED
    assert second.pass1.processed == ["b1", "a2", "b2", "a3"]
    assert engine.store.cluster_of("a3") == engine.store.cluster_of("a1")
    assert len(engine.store.clusters()) == 2
    with pytest.raises(ScanStateError):
        engine.start_scan(faces, resume=True)


def test_pause_and_resume_async_scan(checkpointed):
    engine = checkpointed

    def _pause_once(event):
        if event.kind is EventKind.CLUSTER_CREATED:
            unsubscribe()
            engine.pause_scan()

    unsubscribe = engine.events.subscribe(_pause_once)

    future = engine.start_scan_async(_batch())

    assert engine.wait_for_status([ScanStatus.PAUSED], timeout=10)
    assert engine.load_checkpoint().processed_face_ids == ["a1"]
    engine.resume_scan()
    report = future.result(timeout=30)

    assert report.progress.status is ScanStatus.COMPLETED
    assert engine.store.cluster_of("b2") == engine.store.cluster_of("b1")


def test_control_calls_without_a_scan_raise(engine):
    with pytest.raises(ScanStateError):
        engine.pause_scan()
    with pytest.raises(ScanStateError):
        engine.cancel_scan()
    with pytest.raises(ScanStateError):
        engine.resume_scan()
    with pytest.raises(ScanStateError):
        engine.start_scan(_batch(), resume=True)


def test_storage_failure_fails_the_scan(engine):
    class BrokenSink:
        def write(self, ops):
            raise OSError("read-only file system")

    engine.store.sink = BrokenSink()

    with pytest.raises(StorageUnavailableError):
        engine.start_scan(_batch())

    assert engine.progress.status is ScanStatus.FAILED
    assert "read-only" in engine.progress.error_message
    assert engine.store.clusters() == []


def test_rejected_faces_do_not_count_as_found(engine, recorder):
    faces = _batch() + [face("blurry", unit({0: 1.0}), quality=5.0, photo_uri="p4.jpg")]

    report = engine.start_scan(faces)

    assert report.progress.faces_found == 5
    assert report.progress.total_count == 4
    assert [e.face_id for e in recorder.of_kind(EventKind.REJECTED)] == ["blurry"]


def test_user_operations_refresh_statistics(engine):
    engine.start_scan(_batch())
    engine.refresh_statistics(wait=True, timeout=5)
    cluster_a = engine.store.cluster_of("a1")
    cluster_b = engine.store.cluster_of("b1")

    engine.merge_clusters([cluster_a, cluster_b], target_id=cluster_a)
    engine.refresh_statistics(wait=True, timeout=5)

    assert engine.store.get_statistics(cluster_a).anchor_count == 5
    assert engine.store.get_statistics(cluster_b) is None
    assert engine.check_consistency().ok


def test_checkpoint_path_comes_from_config(tmp_path: Path):
    cfg = ClusteringConfig(checkpoint_path=str(tmp_path / "ck.json"))
    with ClusteringEngine(config=cfg) as eng:
        eng.start_scan([face("solo", unit({0: 1.0}))])
        assert eng.load_checkpoint().phase is ScanPhase.DONE


def test_resumed_second_pass_keeps_deferral_order(checkpointed):
    engine = checkpointed
    later = START_MS + 10 * 60 * 60 * 1000
    faces = [
        face("a1", unit({0: 1.0}), photo_uri="p1.jpg"),
        face("zz", unit({0: 0.55, 1: 0.83516}), photo_uri="p2.jpg"),
        face("aa", unit({0: 0.40, 2: 0.91652}), photo_uri="p3.jpg", photo_timestamp=later),
    ]

    def _cancel_after_last_deferral(event):
        if event.kind is EventKind.DEFERRED and event.face_id == "aa":
            unsubscribe()
            engine.cancel_scan()

    unsubscribe = engine.events.subscribe(_cancel_after_last_deferral)

    first = engine.start_scan(faces)

    assert first.progress.status is ScanStatus.CANCELLED
    checkpoint = engine.load_checkpoint()
    assert checkpoint.phase is ScanPhase.PASS2
    assert checkpoint.deferred_face_ids == ["zz", "aa"]

    second = engine.start_scan(faces, resume=True)

    assert second.pass2.processed == ["zz", "aa"]
    assert second.pass2.resolved == {"zz": engine.store.cluster_of("a1")}
    assert engine.store.cluster_of("aa") is None
