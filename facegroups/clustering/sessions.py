"""Group batch photos into one-hour sessions for Pass 2 temporal hints."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Sequence

from facegroups.types import DetectedFace, PhotoSession, TemporalHint

LOGGER = logging.getLogger("facegroups.clustering.sessions")

DEFAULT_WINDOW_MS = 60 * 60 * 1000


def build_sessions(faces: Iterable[DetectedFace], window_ms: int = DEFAULT_WINDOW_MS) -> List[PhotoSession]:
    """Sort timestamped photos and cut a new session at every gap wider than the window."""
    stamps: Dict[str, int] = {}
    for face in faces:
        if face.photo_timestamp is None or not face.photo_uri:
            continue
        current = stamps.get(face.photo_uri)
        stamps[face.photo_uri] = face.photo_timestamp if current is None else min(current, face.photo_timestamp)

    sessions: List[PhotoSession] = []
    for photo_uri, ts in sorted(stamps.items(), key=lambda item: (item[1], item[0])):
        if sessions and ts - sessions[-1].end_ms <= window_ms:
            sessions[-1].add_photo(photo_uri, ts)
            continue
        sessions.append(
            PhotoSession(
                session_id=f"session-{len(sessions):04d}",
                start_ms=ts,
                end_ms=ts,
                window_ms=window_ms,
                photo_uris={photo_uri},
            )
        )
    LOGGER.debug("Built %d photo sessions from %d photos", len(sessions), len(stamps))
    return sessions


class SessionContext:
    """Which clusters each photo and session has produced so far in the batch."""

    def __init__(self, sessions: Sequence[PhotoSession]) -> None:
        self.sessions = list(sessions)
        self._by_photo: Dict[str, PhotoSession] = {}
        for session in self.sessions:
            for photo_uri in session.photo_uris:
                self._by_photo[photo_uri] = session
        self._photo_clusters: Dict[str, set] = {}

    @classmethod
    def from_faces(
        cls,
        faces: Sequence[DetectedFace],
        assignments: Mapping[str, str],
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> "SessionContext":
        context = cls(build_sessions(faces, window_ms))
        for face in faces:
            cluster_id = assignments.get(face.face_id)
            if cluster_id is not None:
                context.record(face, cluster_id)
        return context

    def record(self, face: DetectedFace, cluster_id: str) -> None:
        if face.photo_uri:
            self._photo_clusters.setdefault(face.photo_uri, set()).add(cluster_id)
        session = self._by_photo.get(face.photo_uri)
        if session is not None:
            session.cluster_ids.add(cluster_id)

    def hints_for(self, face: DetectedFace) -> Dict[str, TemporalHint]:
        """Clusters that get the temporal boost for ``face``, with the strongest hint each."""
        hints: Dict[str, TemporalHint] = {}
        session = self._by_photo.get(face.photo_uri)
        if session is not None:
            for cluster_id in session.cluster_ids:
                hints[cluster_id] = TemporalHint.SESSION_MATCH
        for cluster_id in self._photo_clusters.get(face.photo_uri, ()):
            hints[cluster_id] = TemporalHint.SAME_PHOTO
        return hints
