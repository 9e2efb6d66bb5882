"""
Integrity event types and the immutable event record.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class EventType(str, Enum):
    FACE_NOT_DETECTED = "face_not_detected"
    MULTIPLE_FACES = "multiple_faces"
    FACE_MISMATCH = "face_mismatch"
    SUSPICIOUS_EYE_MOVEMENT = "suspicious_eye_movement"
    VERIFICATION_CLEAN = "verification_clean"
    FULLSCREEN_EXIT = "fullscreen_exit"
    TAB_SWITCH = "tab_switch"
    COPY_ATTEMPT = "copy_attempt"
    PASTE_ATTEMPT = "paste_attempt"
    CONTEXT_MENU = "context_menu"
    CAPTURE_UNAVAILABLE = "capture_unavailable"
    ANALYSIS_UNAVAILABLE = "analysis_unavailable"
    REFERENCE_MISSING_FACE = "reference_missing_face"

    @classmethod
    def coerce(cls, value: Any) -> "EventType":
        """
        Map a client-supplied spelling onto an event type.

        Raises:
            ValueError: When the value names no known event type.
        """
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("-", "_")
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown event type '{value}'") from None


_ALIASES = {
    "full_screen_exit": "fullscreen_exit",
    "copy": "copy_attempt",
    "paste": "paste_attempt",
    "right_click": "context_menu",
    "contextmenu": "context_menu",
    "camera_unavailable": "capture_unavailable",
}

# Signals the capture client may post directly; everything else is derived
# on the server from frame analysis.
CLIENT_SIGNAL_TYPES = frozenset(
    {
        EventType.FULLSCREEN_EXIT,
        EventType.TAB_SWITCH,
        EventType.COPY_ATTEMPT,
        EventType.PASTE_ATTEMPT,
        EventType.CONTEXT_MENU,
        EventType.CAPTURE_UNAVAILABLE,
    }
)


@dataclass(frozen=True)
class IntegrityEvent:
    """
    One observed or derived proctoring signal. Never mutated once built.
    """

    session_id: str
    event_type: EventType
    timestamp: float
    sequence: int
    detail: Mapping[str, Any] = field(default_factory=dict)
    evidence: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        # Freeze the payload so holders of the event cannot edit it in place.
        object.__setattr__(self, "detail", MappingProxyType(dict(self.detail)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "eventType": self.event_type.value,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "detail": dict(self.detail),
            "evidence": self.evidence,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IntegrityEvent":
        return cls(
            id=str(data["id"]),
            session_id=str(data["sessionId"]),
            event_type=EventType.coerce(data["eventType"]),
            timestamp=float(data["timestamp"]),
            sequence=int(data["sequence"]),
            detail=data.get("detail") or {},
            evidence=data.get("evidence"),
        )
