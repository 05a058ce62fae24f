from facegroups.clustering.sessions import SessionContext, build_sessions
from facegroups.types import TemporalHint

from conftest import face, unit

MINUTE = 60 * 1000


def test_sessions_split_on_gaps_wider_than_window():
    faces = [
        face("f3", unit({0: 1.0}), photo_uri="c.jpg", photo_timestamp=120 * MINUTE),
        face("f1", unit({0: 1.0}), photo_uri="a.jpg", photo_timestamp=0),
        face("f2", unit({0: 1.0}), photo_uri="b.jpg", photo_timestamp=30 * MINUTE),
        face("f2b", unit({0: 1.0}), photo_uri="b.jpg", photo_timestamp=30 * MINUTE),
        face("f4", unit({0: 1.0}), photo_uri="d.jpg", photo_timestamp=None),
    ]

    sessions = build_sessions(faces)

    assert [s.photo_uris for s in sessions] == [{"a.jpg", "b.jpg"}, {"c.jpg"}]
    assert sessions[0].start_ms == 0
    assert sessions[0].end_ms == 30 * MINUTE
    assert sessions[1].session_id == "session-0001"


def test_sessions_chain_through_consecutive_photos():
    faces = [
        face(f"f{i}", unit({0: 1.0}), photo_uri=f"{i}.jpg", photo_timestamp=i * 50 * MINUTE) for i in range(4)
    ]

    sessions = build_sessions(faces)

    assert len(sessions) == 1
    assert sessions[0].contains_time(200 * MINUTE)
    assert not sessions[0].contains_time(300 * MINUTE)


def test_hints_prefer_same_photo_over_session():
    a = face("a", unit({0: 1.0}), photo_uri="p1.jpg", photo_timestamp=0)
    b = face("b", unit({0: 1.0}), photo_uri="p2.jpg", photo_timestamp=10 * MINUTE)
    x = face("x", unit({0: 1.0}), photo_uri="p2.jpg", photo_timestamp=10 * MINUTE)
    far = face("far", unit({0: 1.0}), photo_uri="p9.jpg", photo_timestamp=600 * MINUTE)

    context = SessionContext.from_faces([a, b, x, far], {"a": "A", "b": "B"})

    assert context.hints_for(x) == {"A": TemporalHint.SESSION_MATCH, "B": TemporalHint.SAME_PHOTO}
    assert context.hints_for(far) == {}


def test_recorded_assignments_extend_hints():
    a = face("a", unit({0: 1.0}), photo_uri="p1.jpg", photo_timestamp=0)
    x = face("x", unit({0: 1.0}), photo_uri="p1.jpg", photo_timestamp=0)
    context = SessionContext.from_faces([a, x], {})
    assert context.hints_for(x) == {}

    context.record(a, "A")

    assert context.hints_for(x) == {"A": TemporalHint.SAME_PHOTO}
