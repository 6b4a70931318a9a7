"""
Risk Scoring Engine - turns a session's violation log into a 0-100 risk score
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from ..core.config import settings
from ..core.violations import SEVERITY_RANK, ViolationRecord, is_audit_event
from ..utils.timezone import minutes_between

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_WARNING = "warning"
STATUS_TERMINATED = "terminated"


@dataclass(frozen=True)
class SessionRiskProfile:
    session_id: str
    risk_score: float
    violation_count: int
    last_event_at: Optional[datetime]
    status: str

    def to_dict(self) -> Dict:
        return {
            "session_id": self.session_id,
            "risk_score": self.risk_score,
            "violation_count": self.violation_count,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
            "status": self.status,
        }


class RiskScoringEngine:
    """
    Computes a session risk score from its full event history.

    score = clamp(0, 100,
        sum(weight[type] * severity_multiplier)
        * (1.5 if events per minute > 0.5)
        + 10 per 3-event cluster inside 30s
        + 5 per adjacent severity escalation)

    The score is always recomputed from the whole log; nothing is carried
    between calls.
    """

    WEIGHTS: Dict[str, float] = {
        # critical
        "face_mismatch": 25,
        "multiple_faces": 20,
        "dev_tools_open": 30,
        "suspicious_activity": 15,
        # high
        "face_not_detected": 10,
        "gaze_away": 8,
        "multiple_voices": 12,
        "tab_switch": 5,
        "window_blur": 3,
        # medium
        "copy_paste": 7,
        "right_click": 2,
        "keyboard_shortcut": 4,
        # behavioural
        "rapid_answer_change": 6,
        "unusual_typing_pattern": 5,
    }

    # Detector event names that score under a table entry
    ALIASES: Dict[str, str] = {
        "no_face": "face_not_detected",
        "look_away_extended": "gaze_away",
    }

    SEVERITY_MULTIPLIERS: Dict[str, float] = {
        "info": 0.5,
        "warning": 1.0,
        "critical": 2.0,
    }

    DEFAULT_WEIGHT = 1.0
    DEFAULT_MULTIPLIER = 1.0

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        frequency_threshold: Optional[float] = None,
        frequency_multiplier: Optional[float] = None,
        cluster_window_ms: Optional[int] = None,
        cluster_bonus: Optional[float] = None,
        escalation_bonus: Optional[float] = None,
    ):
        self.weights = self.WEIGHTS.copy()
        if weights:
            self.weights.update(weights)
        self.frequency_threshold = settings.frequency_penalty_threshold if frequency_threshold is None else frequency_threshold
        self.frequency_multiplier = settings.frequency_penalty_multiplier if frequency_multiplier is None else frequency_multiplier
        self.cluster_window_ms = settings.cluster_window_ms if cluster_window_ms is None else cluster_window_ms
        self.cluster_bonus = settings.cluster_bonus if cluster_bonus is None else cluster_bonus
        self.escalation_bonus = settings.escalation_bonus if escalation_bonus is None else escalation_bonus

    def weight_for(self, event_type: str) -> float:
        key = self.ALIASES.get(event_type, event_type)
        return float(self.weights.get(key, self.DEFAULT_WEIGHT))

    def multiplier_for(self, severity: str) -> float:
        return self.SEVERITY_MULTIPLIERS.get(severity, self.DEFAULT_MULTIPLIER)

    @staticmethod
    def ordered(events: Iterable[ViolationRecord]) -> List[ViolationRecord]:
        """Violations in chronological order, ties kept in arrival order"""
        violations = [e for e in events if not is_audit_event(e.event_type)]
        return sorted(violations, key=lambda e: (e.timestamp, e.sequence))

    def base_score(self, events: Sequence[ViolationRecord]) -> float:
        return sum(self.weight_for(e.event_type) * self.multiplier_for(e.severity) for e in events)

    def violation_frequency(self, event_count: int, session_start: datetime, now: datetime) -> float:
        minutes_elapsed = max(1.0, minutes_between(session_start, now))
        return event_count / minutes_elapsed

    def cluster_count(self, events: Sequence[ViolationRecord]) -> int:
        clusters = 0
        for i in range(len(events) - 2):
            span_ms = (events[i + 2].timestamp - events[i].timestamp).total_seconds() * 1000
            if span_ms < self.cluster_window_ms:
                clusters += 1
        return clusters

    @staticmethod
    def escalation_count(events: Sequence[ViolationRecord]) -> int:
        escalations = 0
        for prev, curr in zip(events, events[1:]):
            prev_rank = SEVERITY_RANK.get(prev.severity)
            curr_rank = SEVERITY_RANK.get(curr.severity)
            if prev_rank is not None and curr_rank is not None and curr_rank > prev_rank:
                escalations += 1
        return escalations

    def pattern_bonus(self, events: Sequence[ViolationRecord]) -> float:
        return self.cluster_count(events) * self.cluster_bonus + self.escalation_count(events) * self.escalation_bonus

    def score(self, events: Iterable[ViolationRecord], session_start: datetime, now: datetime) -> float:
        ordered = self.ordered(events)
        if not ordered:
            return 0.0

        risk = self.base_score(ordered)

        # a single event has no meaningful rate
        if len(ordered) > 1:
            frequency = self.violation_frequency(len(ordered), session_start, now)
            if frequency > self.frequency_threshold:
                risk *= self.frequency_multiplier

        risk += self.pattern_bonus(ordered)

        return max(0.0, min(100.0, risk))

    def derive_status(self, risk_score: float, violation_count: int, session_terminated: bool = False) -> str:
        if session_terminated:
            return STATUS_TERMINATED
        if risk_score >= settings.warning_risk_score or violation_count >= settings.warning_violation_count:
            return STATUS_WARNING
        return STATUS_ACTIVE

    def profile(
        self,
        session_id: str,
        events: Iterable[ViolationRecord],
        session_start: datetime,
        now: datetime,
        session_terminated: bool = False,
    ) -> SessionRiskProfile:
        events = list(events)
        violations = self.ordered(events)
        risk_score = self.score(violations, session_start, now)
        last_event_at = max((e.timestamp for e in events), default=None)
        return SessionRiskProfile(
            session_id=session_id,
            risk_score=risk_score,
            violation_count=len(violations),
            last_event_at=last_event_at,
            status=self.derive_status(risk_score, len(violations), session_terminated),
        )


risk_engine = RiskScoringEngine()


def score(events: Iterable[ViolationRecord], session_start: datetime, now: datetime) -> float:
    return risk_engine.score(events, session_start, now)
