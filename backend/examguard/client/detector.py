"""
Violation Detector - per-session state machine turning signals into events.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ..core.config import settings
from ..core.violations import EventType, normalize_severity
from ..utils.timezone import utcnow
from .signals import FaceDetectionResult, FaceLandmarks, Signal, SignalKind

logger = logging.getLogger(__name__)

COPY_PASTE_COMBOS = frozenset({"ctrl+c", "ctrl+v", "ctrl+x", "ctrl+a"})
DEV_TOOLS_COMBOS = frozenset({"f12", "ctrl+shift+i"})


class Enrollment(str, Enum):
    UNENROLLED = "unenrolled"
    ENROLLED = "enrolled"


@dataclass
class DetectorState:
    session_id: str
    started_at: datetime
    gaze_away_since: Optional[datetime] = None
    reference_descriptor: Optional[np.ndarray] = None
    enrollment: Enrollment = Enrollment.UNENROLLED
    enrolled_at: Optional[datetime] = None
    last_emitted_at: Optional[datetime] = None
    tab_switch_count: int = 0
    camera_active: bool = True
    mic_active: bool = True
    system_error_reported: bool = False
    dropped_count: int = 0


@dataclass(frozen=True)
class DetectedEvent:
    session_id: str
    event_type: str
    tier: str
    description: str
    timestamp: datetime
    time_into_exam: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return normalize_severity(self.tier)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "event_type": self.event_type,
            "severity": self.severity,
            "description": self.description,
            "metadata": dict(self.metadata, tier=self.tier),
            "timestamp": self.timestamp.isoformat(),
            "time_into_exam": self.time_into_exam,
        }


def key_combo(value: Optional[str]) -> str:
    return (value or "").replace(" ", "").lower()


def descriptor_distance(a: Sequence[float], b: Sequence[float]) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=float) - np.asarray(b, dtype=float)))


def gaze_offset(landmarks: FaceLandmarks) -> float:
    """Horizontal offset between the outer-eye midpoint and the nose bridge"""
    eye_center_x = (landmarks.left_eye[0].x + landmarks.right_eye[3].x) / 2
    nose_center_x = landmarks.nose[3].x
    return abs(eye_center_x - nose_center_x)


def band_levels(bands: Sequence[float]) -> Dict[str, float]:
    data = np.asarray(bands, dtype=float)
    return {
        "average": float(data.mean()) if data.size else 0.0,
        "low": float(data[0:10].sum() / 10),
        "mid": float(data[10:50].sum() / 40),
        "high": float(data[50:100].sum() / 50),
    }


class ViolationDetector:
    """
    Converts raw signals into typed, severity-tagged events for each session.

    Lifecycle is explicit: ``start(session_id)``, ``tick(session_id, signal)``,
    ``stop(session_id)``. Violations are rate-limited per session: anything
    within ``throttle_ms`` of the previous emitted violation is dropped.
    Audit events (start, end, enrollment, media errors) are never dropped.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.throttle = timedelta(milliseconds=settings.violation_throttle_ms)
        self.gaze_window = timedelta(milliseconds=settings.gaze_away_threshold_ms)
        self.gaze_offset_threshold = settings.gaze_offset_threshold_px
        self.face_match_distance = settings.face_match_distance
        self.surprised_threshold = settings.surprised_expression_threshold
        self._sessions: Dict[str, DetectorState] = {}

    def state(self, session_id: str) -> DetectorState:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise ValueError(f"Detector not started for session {session_id}") from None

    def is_running(self, session_id: str) -> bool:
        return session_id in self._sessions

    def start(self, session_id: str, at: Optional[datetime] = None) -> List[DetectedEvent]:
        if session_id in self._sessions:
            return []
        at = at or self.clock()
        state = DetectorState(session_id=session_id, started_at=at)
        self._sessions[session_id] = state
        event = self._emit(state, EventType.SESSION_START, "info", "Proctoring session started", at, audit=True)
        return [event]

    def stop(self, session_id: str, at: Optional[datetime] = None) -> List[DetectedEvent]:
        state = self._sessions.pop(session_id, None)
        if state is None:
            return []
        at = at or self.clock()
        event = self._emit(
            state, EventType.SESSION_END, "info", "Proctoring session ended", at,
            metadata={"tab_switch_count": state.tab_switch_count, "dropped_events": state.dropped_count},
            audit=True,
        )
        return [event]

    def tick(self, session_id: str, signal: Signal) -> List[DetectedEvent]:
        state = self.state(session_id)
        state.camera_active = signal.camera_active
        state.mic_active = signal.mic_active

        if signal.kind == SignalKind.FRAME:
            events = self._on_frame(state, signal.faces, signal.at)
        elif signal.kind == SignalKind.AUDIO:
            events = self._on_audio(state, signal.audio_bands, signal.at)
        elif signal.kind == SignalKind.SYSTEM_ERROR:
            events = self._on_system_error(state, signal.value, signal.at)
        else:
            events = self._on_page_event(state, signal)

        return [e for e in events if e is not None]

    def _on_frame(self, state: DetectorState, faces: Sequence[FaceDetectionResult], at: datetime):
        if len(faces) == 0:
            return [self._emit(state, EventType.NO_FACE, "high", "No face detected in camera", at)]

        if len(faces) > 1:
            return [self._emit(
                state, EventType.MULTIPLE_FACES, "critical", "Multiple faces detected", at,
                metadata={"face_count": len(faces)},
            )]

        face = faces[0]
        events = []

        if state.reference_descriptor is None:
            events.append(self._enroll(state, face, at))
        else:
            distance = descriptor_distance(face.descriptor, state.reference_descriptor)
            if distance > self.face_match_distance:
                events.append(self._emit(
                    state, EventType.FACE_MISMATCH, "critical", "Face does not match registered student", at,
                    metadata={"distance": round(distance, 4)},
                ))
                return events

        if face.landmarks is not None:
            events.append(self._check_gaze(state, face.landmarks, at))

        surprised = face.expressions.get("surprised", 0.0)
        if surprised > self.surprised_threshold:
            events.append(self._emit(
                state, EventType.SUSPICIOUS_EXPRESSION, "medium", "Suspicious facial expression detected", at,
                metadata={"surprised": surprised},
            ))

        return events

    def _enroll(self, state: DetectorState, face: FaceDetectionResult, at: datetime) -> DetectedEvent:
        # First single face seen becomes the reference identity; concurrent
        # first frames resolve last-write-wins.
        state.reference_descriptor = np.asarray(face.descriptor, dtype=float)
        state.enrollment = Enrollment.ENROLLED
        state.enrolled_at = at
        logger.info(f"Reference face enrolled for session {state.session_id}")
        return self._emit(
            state, EventType.FACE_ENROLLED, "info", "Reference face enrolled from first detected frame", at,
            metadata={"descriptor_length": int(state.reference_descriptor.size)},
            audit=True,
        )

    def _check_gaze(self, state: DetectorState, landmarks: FaceLandmarks, at: datetime) -> Optional[DetectedEvent]:
        offset = gaze_offset(landmarks)
        if offset <= self.gaze_offset_threshold:
            state.gaze_away_since = None
            return None

        if state.gaze_away_since is None:
            state.gaze_away_since = at
            return None

        if at - state.gaze_away_since > self.gaze_window:
            away_ms = int((at - state.gaze_away_since).total_seconds() * 1000)
            state.gaze_away_since = None
            return self._emit(
                state, EventType.LOOK_AWAY_EXTENDED, "high", "Looking away for more than 3 seconds", at,
                metadata={"gaze_offset": round(offset, 2), "away_ms": away_ms},
            )
        return None

    def _on_audio(self, state: DetectorState, bands: Sequence[float], at: datetime):
        if not bands:
            return []
        levels = band_levels(bands)
        if levels["average"] <= settings.audio_activity_threshold:
            return []
        if (
            levels["low"] > settings.audio_low_band_threshold
            and levels["mid"] > settings.audio_mid_band_threshold
            and levels["high"] > settings.audio_high_band_threshold
        ):
            return [self._emit(
                state, EventType.MULTIPLE_VOICES, "high", "Multiple voices detected in audio", at,
                metadata={k: round(v, 2) for k, v in levels.items()},
            )]
        return []

    def _on_system_error(self, state: DetectorState, message: Optional[str], at: datetime):
        if state.system_error_reported:
            return []
        state.system_error_reported = True
        return [self._emit(
            state, EventType.SYSTEM_ERROR, "info", message or "Failed to access camera/microphone", at,
            audit=True,
        )]

    def _on_page_event(self, state: DetectorState, signal: Signal):
        at = signal.at
        if signal.kind == SignalKind.VISIBILITY_HIDDEN:
            state.tab_switch_count += 1
            return [self._emit(
                state, EventType.TAB_SWITCH, "high", "Student switched tabs or minimized window", at,
                metadata={"tab_switch_count": state.tab_switch_count},
            )]
        if signal.kind == SignalKind.WINDOW_BLURRED:
            return [self._emit(state, EventType.WINDOW_BLUR, "medium", "Window lost focus", at)]
        if signal.kind == SignalKind.FULLSCREEN_EXITED:
            return [self._emit(state, EventType.FULLSCREEN_EXIT, "high", "Exited fullscreen mode", at)]
        if signal.kind == SignalKind.CONTEXT_MENU_ATTEMPTED:
            return [self._emit(state, EventType.RIGHT_CLICK, "low", "Right-click attempted", at)]
        if signal.kind == SignalKind.KEY_COMBO:
            combo = key_combo(signal.value)
            if combo in COPY_PASTE_COMBOS:
                return [self._emit(
                    state, EventType.COPY_PASTE, "medium", "Attempted copy/paste operation", at,
                    metadata={"combo": combo},
                )]
            if combo in DEV_TOOLS_COMBOS:
                return [self._emit(
                    state, EventType.DEV_TOOLS_OPEN, "critical", "Attempted to open developer tools", at,
                    metadata={"combo": combo},
                )]
        return []

    def _emit(
        self,
        state: DetectorState,
        event_type: EventType,
        tier: str,
        description: str,
        at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
        audit: bool = False,
    ) -> Optional[DetectedEvent]:
        if not audit:
            if state.last_emitted_at is not None and at - state.last_emitted_at < self.throttle:
                state.dropped_count += 1
                logger.debug(f"Throttled {event_type.value} for session {state.session_id}")
                return None
            state.last_emitted_at = at

        payload = {"camera_active": state.camera_active, "mic_active": state.mic_active}
        if metadata:
            payload.update(metadata)

        return DetectedEvent(
            session_id=state.session_id,
            event_type=event_type.value,
            tier=tier,
            description=description,
            timestamp=at,
            time_into_exam=max(0, int((at - state.started_at).total_seconds())),
            metadata=payload,
        )
