"""
Violation vocabulary shared by the detector, the gateway and the scorer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    NO_FACE = "no_face"
    FACE_NOT_DETECTED = "face_not_detected"
    MULTIPLE_FACES = "multiple_faces"
    FACE_MISMATCH = "face_mismatch"
    GAZE_AWAY = "gaze_away"
    LOOK_AWAY_EXTENDED = "look_away_extended"
    TAB_SWITCH = "tab_switch"
    WINDOW_BLUR = "window_blur"
    FULLSCREEN_EXIT = "fullscreen_exit"
    COPY_PASTE = "copy_paste"
    DEV_TOOLS_OPEN = "dev_tools_open"
    RIGHT_CLICK = "right_click"
    KEYBOARD_SHORTCUT = "keyboard_shortcut"
    MULTIPLE_VOICES = "multiple_voices"
    SUSPICIOUS_EXPRESSION = "suspicious_expression"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RAPID_ANSWER_CHANGE = "rapid_answer_change"
    UNUSUAL_TYPING_PATTERN = "unusual_typing_pattern"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    FACE_ENROLLED = "face_enrolled"
    SYSTEM_ERROR = "system_error"


# Recorded in the log for audit, never scored or counted as violations
AUDIT_EVENT_TYPES = frozenset({
    EventType.SESSION_START.value,
    EventType.SESSION_END.value,
    EventType.FACE_ENROLLED.value,
    EventType.SYSTEM_ERROR.value,
})


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.INFO.value: 1,
    Severity.WARNING.value: 2,
    Severity.CRITICAL.value: 3,
}

# Detector policy tiers folded onto the stored severity scale
POLICY_SEVERITY = {
    "low": Severity.INFO.value,
    "medium": Severity.WARNING.value,
    "high": Severity.CRITICAL.value,
    "critical": Severity.CRITICAL.value,
}


def normalize_severity(value: Optional[str]) -> str:
    """Map a policy tier or stored severity to info/warning/critical.

    Unrecognised values pass through unchanged and score with multiplier 1.
    """
    if value is None:
        return Severity.WARNING.value
    value = value.strip().lower()
    if value in SEVERITY_RANK:
        return value
    return POLICY_SEVERITY.get(value, value)


def is_audit_event(event_type: str) -> bool:
    return event_type in AUDIT_EVENT_TYPES


@dataclass(frozen=True)
class ViolationRecord:
    """Immutable view of one logged event, detached from the ORM"""

    session_id: str
    event_type: str
    severity: str
    timestamp: datetime
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    time_into_exam: Optional[int] = None
    sequence: int = 0

    @property
    def is_violation(self) -> bool:
        return not is_audit_event(self.event_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "event_type": self.event_type,
            "severity": self.severity,
            "description": self.description,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
            "time_into_exam": self.time_into_exam,
        }
