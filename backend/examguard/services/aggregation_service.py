"""
Aggregation & Anomaly Service - per-exam dashboards and per-student summaries.

Reads are plain snapshots of committed rows; nothing here takes the
ingestion locks, so dashboards can be polled at any rate.
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.cache import cache
from ..core.config import settings
from ..core.violations import EventType, ViolationRecord, is_audit_event
from ..models.exam import ExamSession, OPEN_SESSION_STATUSES, SessionStatus
from ..models.violation_event import ViolationEvent
from ..utils.timezone import format_display_time, utcnow
from .risk_scoring import RiskScoringEngine, risk_engine
from .session_service import SessionService

logger = logging.getLogger(__name__)

FACE_MISSING_TYPES = {EventType.NO_FACE.value, EventType.FACE_NOT_DETECTED.value}
GAZE_TYPES = {EventType.GAZE_AWAY.value, EventType.LOOK_AWAY_EXTENDED.value}
FACE_TYPES = FACE_MISSING_TYPES | {EventType.MULTIPLE_FACES.value, EventType.FACE_MISMATCH.value}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class TimelineBucket:
    exam_id: str
    bucket_start: datetime
    bucket_end: datetime
    label: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exam_id": self.exam_id,
            "bucket_start": self.bucket_start.isoformat(),
            "bucket_end": self.bucket_end.isoformat(),
            "time": self.label,
            "count": self.count,
        }


@dataclass(frozen=True)
class AnomalyRecord:
    type: str
    subject_id: str
    description: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "subject_id": self.subject_id,
            "description": self.description,
            "confidence": self.confidence,
        }


def build_timeline(
    exam_id: str,
    exam_start: datetime,
    events: Iterable[ViolationRecord],
    now: datetime,
    bucket_minutes: Optional[int] = None,
    bucket_count: Optional[int] = None,
) -> List[TimelineBucket]:
    """Count violations per fixed-width bucket from exam start to now, newest buckets only"""
    bucket_minutes = bucket_minutes or settings.timeline_bucket_minutes
    bucket_count = bucket_count or settings.timeline_bucket_count
    width = timedelta(minutes=bucket_minutes)

    if now < exam_start:
        return []

    timestamps = sorted(e.timestamp for e in events if not is_audit_event(e.event_type))
    total = int((now - exam_start) / width) + 1
    first = max(0, total - bucket_count)

    buckets: List[TimelineBucket] = []
    for index in range(first, total):
        start = exam_start + width * index
        end = start + width
        count = sum(1 for ts in timestamps if start <= ts < end)
        buckets.append(TimelineBucket(exam_id, start, end, format_display_time(start), count))

    return buckets


def count_by_type(events: Iterable[ViolationRecord]) -> Dict[str, int]:
    counts: Dict[str, int] = OrderedDict()
    for e in events:
        counts[e.event_type] = counts.get(e.event_type, 0) + 1
    return dict(counts)


def count_by_severity(events: Iterable[ViolationRecord]) -> Dict[str, int]:
    counts: Dict[str, int] = OrderedDict()
    for e in events:
        counts[e.severity] = counts.get(e.severity, 0) + 1
    return dict(counts)


def latest_metadata_flag(events: Sequence[ViolationRecord], key: str) -> bool:
    for e in sorted(events, key=lambda r: (r.timestamp, r.sequence), reverse=True):
        if key in e.metadata:
            return bool(e.metadata[key])
    return False


def detect_anomalies(
    students: Sequence[Dict[str, Any]],
    events: Iterable[ViolationRecord],
    now: datetime,
    exam_id: str = "",
    limit: Optional[int] = None,
) -> List[AnomalyRecord]:
    """
    Heuristic anomaly flags, highest confidence first.

    Equal confidences keep discovery order: students in roster order
    (count, tab switching, risk), then the exam-wide spike.
    """
    limit = settings.max_anomalies if limit is None else limit
    anomalies: List[AnomalyRecord] = []

    for student in students:
        name = student["name"]
        if student["violation_count"] > settings.anomaly_violation_count:
            anomalies.append(AnomalyRecord(
                type="high_violation_count",
                subject_id=student["id"],
                description=f"{name} has {student['violation_count']} violations",
                confidence=min(95, 60 + student["violation_count"] * 2),
            ))

        if student["tab_switches"] > settings.anomaly_tab_switches:
            anomalies.append(AnomalyRecord(
                type="excessive_tab_switching",
                subject_id=student["id"],
                description=f"{name} switched tabs {student['tab_switches']} times",
                confidence=min(90, 50 + student["tab_switches"] * 3),
            ))

        if student["risk_score"] > settings.anomaly_risk_score:
            anomalies.append(AnomalyRecord(
                type="critical_risk_level",
                subject_id=student["id"],
                description=f"{name} has a risk score of {student['risk_score']}%",
                confidence=student["risk_score"],
            ))

    window_start = now - timedelta(minutes=settings.spike_window_minutes)
    recent = [e for e in events if not is_audit_event(e.event_type) and e.timestamp > window_start]
    if len(recent) > settings.spike_event_count:
        anomalies.append(AnomalyRecord(
            type="violation_spike",
            subject_id=exam_id,
            description=f"{len(recent)} violations in the last {settings.spike_window_minutes} minutes",
            confidence=min(95, 50 + len(recent)),
        ))

    # sorted() is stable, so ties stay in discovery order
    anomalies = sorted(anomalies, key=lambda a: a.confidence, reverse=True)
    return anomalies[:limit]


def detector_confidence(events: Sequence[ViolationRecord]) -> Dict[str, float]:
    face = sum(1 for e in events if e.event_type in FACE_TYPES)
    gaze = sum(1 for e in events if e.event_type in GAZE_TYPES)
    audio = sum(1 for e in events if e.event_type == EventType.MULTIPLE_VOICES.value or "audio" in e.event_type)
    return {
        "face_detection_confidence": max(70, 100 - face * 2),
        "gaze_tracking_confidence": max(65, 100 - gaze * 3),
        "audio_analysis_confidence": max(75, 100 - audio * 2.5),
        "behavioral_confidence": max(60, 100 - len(events) * 0.5),
    }


def flagged_behaviors(events: Sequence[ViolationRecord]) -> List[Dict[str, Any]]:
    behaviors = []
    counts = count_by_type(events)

    multiple_faces = counts.get(EventType.MULTIPLE_FACES.value, 0)
    if multiple_faces > 0:
        behaviors.append({
            "type": "Multiple Faces Detected",
            "count": multiple_faces,
            "severity": "critical",
            "description": "Multiple people detected in camera feed",
        })

    mismatches = counts.get(EventType.FACE_MISMATCH.value, 0)
    if mismatches > 0:
        behaviors.append({
            "type": "Identity Verification Failed",
            "count": mismatches,
            "severity": "critical",
            "description": "Face does not match registered student",
        })

    tab_switches = counts.get(EventType.TAB_SWITCH.value, 0)
    if tab_switches > 5:
        behaviors.append({
            "type": "Excessive Tab Switching",
            "count": tab_switches,
            "severity": "warning",
            "description": "Student switched browser tabs frequently",
        })

    face_missing = sum(counts.get(t, 0) for t in FACE_MISSING_TYPES)
    if face_missing > 10:
        behaviors.append({
            "type": "Extended Absence from Camera",
            "count": face_missing,
            "severity": "warning",
            "description": "Student was not visible in camera for extended periods",
        })

    return behaviors


def recommendations(events: Sequence[ViolationRecord], risk_score: float) -> List[Dict[str, str]]:
    recs = []

    if risk_score > 80:
        recs.append({
            "priority": "high",
            "action": "Manual Review Required",
            "description": "High risk score indicates potential academic dishonesty. Recommend detailed review and possible interview.",
        })
    elif risk_score > 60:
        recs.append({
            "priority": "medium",
            "action": "Additional Verification",
            "description": "Moderate risk detected. Consider reviewing specific violations and student responses.",
        })

    critical = sum(1 for e in events if e.severity == "critical")
    if critical > 0:
        recs.append({
            "priority": "high",
            "action": "Investigate Critical Violations",
            "description": f"{critical} critical violations detected. Review timestamps and context.",
        })

    tab_switches = sum(1 for e in events if e.event_type == EventType.TAB_SWITCH.value)
    if tab_switches > 8:
        recs.append({
            "priority": "medium",
            "action": "Review Tab Switch Activity",
            "description": "Excessive tab switching may indicate external resource usage.",
        })

    return recs


class AggregationService:
    def __init__(self, db: Session, scorer: Optional[RiskScoringEngine] = None):
        self.db = db
        self.scorer = scorer or risk_engine
        self.sessions = SessionService(db, scorer=self.scorer)

    def exam_events(self, exam_id: str) -> List[ViolationRecord]:
        rows = self.db.execute(
            select(ViolationEvent)
            .where(ViolationEvent.exam_id == exam_id)
            .order_by(ViolationEvent.timestamp, ViolationEvent.id)
        ).scalars().all()
        return [row.to_record() for row in rows]

    def exam_sessions(self, exam_id: str) -> List[ExamSession]:
        return self.db.execute(
            select(ExamSession)
            .where(ExamSession.exam_id == exam_id)
            .order_by(ExamSession.start_time, ExamSession.id)
        ).scalars().all()

    def student_row(self, session: ExamSession, events: List[ViolationRecord], now: datetime) -> Dict[str, Any]:
        as_of = session.end_time or now
        profile = self.scorer.profile(
            session.id,
            events,
            session.start_time,
            as_of,
            session_terminated=session.status == SessionStatus.TERMINATED.value,
        )
        violations = self.scorer.ordered(events)
        recent = sorted(violations, key=lambda e: (e.timestamp, e.sequence), reverse=True)
        recent = recent[:settings.recent_violations_limit]

        return {
            "id": session.id,
            "student_id": session.student_id,
            "name": session.student_name or session.student_id,
            "email": session.student_email,
            "risk_score": round_half_up(profile.risk_score),
            "violation_count": profile.violation_count,
            "tab_switches": sum(1 for e in violations if e.event_type == EventType.TAB_SWITCH.value),
            "status": profile.status,
            "last_event_at": profile.last_event_at.isoformat() if profile.last_event_at else None,
            "camera_active": latest_metadata_flag(events, "camera_active"),
            "mic_active": latest_metadata_flag(events, "mic_active"),
            "recent_violations": [
                {"type": e.event_type, "severity": e.severity, "timestamp": e.timestamp.isoformat()}
                for e in recent
            ],
            "face_missing_count": sum(1 for e in violations if e.event_type in FACE_MISSING_TYPES),
            "gaze_away_count": sum(1 for e in violations if e.event_type in GAZE_TYPES),
            "audio_issues": sum(1 for e in violations if e.event_type == EventType.MULTIPLE_VOICES.value),
        }

    def dashboard(self, exam_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        use_cache = now is None and settings.dashboard_cache_ttl > 0
        cache_key = f"dashboard:{exam_id}"
        if use_cache:
            cached = cache.get(cache_key)
            if cached is not None:
                return cached

        exam = self.sessions.get_exam(exam_id)
        now = now or utcnow()
        sessions = self.exam_sessions(exam_id)
        events = self.exam_events(exam_id)
        violations = [e for e in events if e.is_violation]

        by_session: Dict[str, List[ViolationRecord]] = {s.id: [] for s in sessions}
        for e in events:
            by_session.setdefault(e.session_id, []).append(e)

        students = [self.student_row(s, by_session.get(s.id, []), now) for s in sessions]

        active = sum(1 for s in sessions if s.status in OPEN_SESSION_STATUSES)
        high_risk = sum(1 for s in students if s["risk_score"] >= settings.high_risk_score)
        avg_risk = round_half_up(sum(s["risk_score"] for s in students) / len(students)) if students else 0

        exam_start = exam.start_time or min((s.start_time for s in sessions), default=now)
        timeline = build_timeline(exam_id, exam_start, violations, now)

        analytics = detector_confidence(violations)
        analytics["anomalies"] = [a.to_dict() for a in detect_anomalies(students, violations, now, exam_id=exam_id)]

        data = {
            "exam_id": exam_id,
            "generated_at": now.isoformat(),
            "overview": {
                "active_students": active,
                "total_violations": len(violations),
                "high_risk_students": high_risk,
                "avg_risk_score": avg_risk,
            },
            "students": students,
            "violations": {
                "by_type": [{"name": k, "count": v} for k, v in count_by_type(violations).items()],
                "by_severity": [{"severity": k, "count": v} for k, v in count_by_severity(violations).items()],
                "timeline": [b.to_dict() for b in timeline],
            },
            "analytics": analytics,
        }

        if use_cache:
            cache.set(cache_key, data, ttl=settings.dashboard_cache_ttl)
        return data

    def student_summary(self, session_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        session = self.sessions.get_session(session_id)
        events = self.sessions.records(session_id)
        profile = self.sessions.profile(session, as_of=session.end_time or now or utcnow())
        violations = self.scorer.ordered(events)

        return {
            "session_id": session.id,
            "exam_id": session.exam_id,
            "student_id": session.student_id,
            "status": profile.status,
            "total_violations": profile.violation_count,
            "risk_score": round_half_up(profile.risk_score),
            "violations_by_type": count_by_type(violations),
            "violations_by_severity": count_by_severity(violations),
            "timeline": [
                {
                    "timestamp": e.timestamp.isoformat(),
                    "event_type": e.event_type,
                    "severity": e.severity,
                    "description": e.description,
                }
                for e in violations
            ],
            "flagged_behaviors": flagged_behaviors(violations),
            "recommendations": recommendations(violations, profile.risk_score),
        }
