"""Decision events published to presentation layers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger("facegroups.events")


class EventKind(str, Enum):
    ASSIGNED = "ASSIGNED"
    CLUSTER_CREATED = "CLUSTER_CREATED"
    DEFERRED = "DEFERRED"
    MERGE_SUGGESTED = "MERGE_SUGGESTED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class DecisionEvent:
    kind: EventKind
    face_id: Optional[str] = None
    cluster_id: Optional[str] = None
    other_cluster_id: Optional[str] = None
    anchor_id: Optional[str] = None
    reason: Optional[str] = None
    confidence: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def assigned(cls, face_id: str, cluster_id: str, **details: Any) -> "DecisionEvent":
        return cls(EventKind.ASSIGNED, face_id=face_id, cluster_id=cluster_id, details=details)

    @classmethod
    def cluster_created(cls, cluster_id: str, anchor_id: str, face_id: Optional[str] = None) -> "DecisionEvent":
        return cls(EventKind.CLUSTER_CREATED, face_id=face_id, cluster_id=cluster_id, anchor_id=anchor_id)

    @classmethod
    def deferred(cls, face_id: str, reason: str) -> "DecisionEvent":
        return cls(EventKind.DEFERRED, face_id=face_id, reason=reason)

    @classmethod
    def merge_suggested(cls, cluster_a: str, cluster_b: str, confidence: float) -> "DecisionEvent":
        return cls(
            EventKind.MERGE_SUGGESTED,
            cluster_id=cluster_a,
            other_cluster_id=cluster_b,
            confidence=confidence,
        )

    @classmethod
    def rejected(cls, face_id: str, reason: str) -> "DecisionEvent":
        return cls(EventKind.REJECTED, face_id=face_id, reason=reason)


Listener = Callable[[DecisionEvent], None]


class EventBus:
    """Fan-out of decision events. Listener failures are logged and never reach the engine."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: DecisionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:  # pragma: no cover - runtime guard
                LOGGER.warning("Event listener failed on %s: %s", event.kind.value, exc)


class EventRecorder:
    """Listener that keeps every event it sees; handy for CLIs and tests."""

    def __init__(self) -> None:
        self.events: List[DecisionEvent] = []

    def __call__(self, event: DecisionEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[DecisionEvent]:
        return [event for event in self.events if event.kind is kind]
