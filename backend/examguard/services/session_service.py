import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.exceptions import ExamNotFoundError, SessionClosedError, SessionNotFoundError
from ..core.locks import SessionLockRegistry, session_locks
from ..core.violations import ViolationRecord
from ..models.exam import Exam, ExamSession, SessionStatus
from ..models.violation_event import ViolationEvent
from ..utils.proctor_logging import log_session_closed, log_session_opened
from ..utils.timezone import to_utc_naive, utcnow
from .risk_scoring import RiskScoringEngine, SessionRiskProfile, risk_engine

logger = logging.getLogger(__name__)


class SessionService:
    """Attempt lifecycle as seen by the proctoring pipeline"""

    def __init__(
        self,
        db: Session,
        scorer: Optional[RiskScoringEngine] = None,
        locks: Optional[SessionLockRegistry] = None,
    ):
        self.db = db
        self.scorer = scorer or risk_engine
        self.locks = locks or session_locks

    def get_exam(self, exam_id: str) -> Exam:
        exam = self.db.get(Exam, exam_id)
        if exam is None:
            raise ExamNotFoundError(exam_id)
        return exam

    def get_session(self, session_id: str) -> ExamSession:
        session = self.db.get(ExamSession, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def open_session(
        self,
        exam_id: str,
        student_id: str,
        session_id: Optional[str] = None,
        student_name: Optional[str] = None,
        student_email: Optional[str] = None,
        start_time: Optional[datetime] = None,
    ) -> ExamSession:
        self.get_exam(exam_id)

        if session_id:
            existing = self.db.get(ExamSession, session_id)
            if existing is not None:
                if existing.exam_id != exam_id or existing.student_id != student_id:
                    raise ValueError(f"Session id {session_id} already belongs to another attempt")
                return existing

        session = ExamSession(
            id=session_id or f"SES_{uuid.uuid4().hex[:12].upper()}",
            exam_id=exam_id,
            student_id=student_id,
            student_name=student_name,
            student_email=student_email,
            start_time=to_utc_naive(start_time) if start_time else utcnow(),
            status=SessionStatus.IN_PROGRESS.value,
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)

        log_session_opened(session.id, exam_id, student_id)
        return session

    def end_session(self, session_id: str, status: str = SessionStatus.SUBMITTED.value, reason: Optional[str] = None) -> ExamSession:
        """Close a session; later events for it are rejected"""
        if status not in (SessionStatus.SUBMITTED.value, SessionStatus.TERMINATED.value):
            raise ValueError(f"Cannot end a session with status {status!r}")

        with self.locks.hold(session_id):
            session = self.get_session(session_id)
            self.db.refresh(session)
            if not session.is_open:
                raise SessionClosedError(session_id, session.status)

            session.status = status
            session.end_time = utcnow()
            if reason:
                session.termination_reason = reason
            self.db.commit()
            self.db.refresh(session)

        profile = self.profile(session, as_of=session.end_time)
        log_session_closed(session_id, session.status, profile.risk_score)
        return session

    def records(self, session_id: str) -> List[ViolationRecord]:
        rows = self.db.execute(
            select(ViolationEvent)
            .where(ViolationEvent.session_id == session_id)
            .order_by(ViolationEvent.timestamp, ViolationEvent.id)
        ).scalars().all()
        return [row.to_record() for row in rows]

    def profile(self, session: ExamSession, as_of: Optional[datetime] = None) -> SessionRiskProfile:
        records = self.records(session.id)
        now = as_of or session.end_time or utcnow()
        return self.scorer.profile(
            session.id,
            records,
            session.start_time,
            now,
            session_terminated=session.status == SessionStatus.TERMINATED.value,
        )

    def live_profile(self, session_id: str, as_of: Optional[datetime] = None) -> SessionRiskProfile:
        """Current profile of an open session; closed sessions are rejected"""
        session = self.get_session(session_id)
        if not session.is_open:
            raise SessionClosedError(session_id, session.status)
        return self.profile(session, as_of=as_of)
