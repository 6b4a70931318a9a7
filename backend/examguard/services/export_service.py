import csv
import io
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..utils.timezone import utcnow
from .aggregation_service import AggregationService

EXPORT_COLUMNS = [
    "exam_id",
    "session_id",
    "student_id",
    "student_name",
    "session_status",
    "session_risk_score",
    "timestamp",
    "time_into_exam",
    "event_type",
    "severity",
    "description",
]


class ExportService:
    """Flat violation rows for an exam; file delivery is the caller's business"""

    def __init__(self, db: Session):
        self.db = db
        self.aggregation = AggregationService(db)

    def rows(self, exam_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        self.aggregation.sessions.get_exam(exam_id)
        now = now or utcnow()
        sessions = {s.id: s for s in self.aggregation.exam_sessions(exam_id)}
        events = [e for e in self.aggregation.exam_events(exam_id) if e.is_violation]

        risk_by_session = {}
        for session in sessions.values():
            profile = self.aggregation.sessions.profile(session, as_of=session.end_time or now)
            risk_by_session[session.id] = round(profile.risk_score, 2)

        rows = []
        for e in events:
            session = sessions.get(e.session_id)
            rows.append({
                "exam_id": exam_id,
                "session_id": e.session_id,
                "student_id": session.student_id if session else None,
                "student_name": session.student_name if session else None,
                "session_status": session.status if session else None,
                "session_risk_score": risk_by_session.get(e.session_id),
                "timestamp": e.timestamp.isoformat(),
                "time_into_exam": e.time_into_exam,
                "event_type": e.event_type,
                "severity": e.severity,
                "description": e.description,
            })
        return rows

    def to_csv(self, rows: List[Dict[str, Any]]) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return buffer.getvalue()
