"""
Event Ingestion Gateway - persists detector events and re-evaluates the session
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import SessionClosedError
from ..core.locks import SessionLockRegistry, session_locks
from ..core.violations import normalize_severity
from ..models.exam import ExamSession, SessionStatus
from ..models.violation_event import ViolationEvent
from ..utils.proctor_logging import log_proctor_event, log_termination
from ..utils.timezone import to_utc_naive, utcnow
from .risk_scoring import RiskScoringEngine, SessionRiskProfile, risk_engine
from .session_service import SessionService
from .termination_policy import TerminationPolicy, termination_policy

logger = logging.getLogger(__name__)

ForceSubmitNotifier = Callable[[str, str], None]


@dataclass(frozen=True)
class IngestDecision:
    terminated: bool
    duplicate: bool
    profile: SessionRiskProfile
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "terminated": self.terminated,
            "duplicate": self.duplicate,
            "risk_score": round(self.profile.risk_score, 2),
            "violation_count": self.profile.violation_count,
            "status": self.profile.status,
            "reason": self.reason,
        }


def _default_notifier(session_id: str, reason: str):
    from ..tasks.notifications import dispatch_force_submit
    dispatch_force_submit(session_id, reason)


class IngestionService:
    """
    Appends events to a session's log and returns the fresh termination decision.

    Ingestion for one session is serialised by a per-session lock so that
    scoring folds over the log in arrival order. Different sessions proceed
    in parallel.
    """

    def __init__(
        self,
        db: Session,
        scorer: Optional[RiskScoringEngine] = None,
        policy: Optional[TerminationPolicy] = None,
        notifier: Optional[ForceSubmitNotifier] = None,
        locks: Optional[SessionLockRegistry] = None,
    ):
        self.db = db
        self.scorer = scorer or risk_engine
        self.policy = policy or termination_policy
        self.notifier = notifier or _default_notifier
        self.locks = locks or session_locks
        self.sessions = SessionService(db, scorer=self.scorer, locks=self.locks)

    def ingest(
        self,
        session_id: str,
        event_type: str,
        timestamp: datetime,
        severity: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        time_into_exam: Optional[int] = None,
    ) -> IngestDecision:
        timestamp = to_utc_naive(timestamp)
        severity = normalize_severity(severity)

        with self.locks.hold(session_id):
            session = self.sessions.get_session(session_id)
            self.db.refresh(session)

            # a redelivered event is answered, even after the session closed
            if self._is_duplicate(session_id, event_type, timestamp):
                logger.info(f"Duplicate event {event_type}@{timestamp.isoformat()} for session {session_id} ignored")
                return self._decision(session, duplicate=True)

            if not session.is_open:
                raise SessionClosedError(session_id, session.status)

            row = ViolationEvent(
                session_id=session_id,
                exam_id=session.exam_id,
                event_type=event_type,
                severity=severity,
                description=description or "",
                event_metadata=metadata or {},
                timestamp=timestamp,
                time_into_exam=time_into_exam,
            )
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                # another worker process stored the same delivery first
                self.db.rollback()
                logger.info(f"Concurrent duplicate event {event_type} for session {session_id} ignored")
                return self._decision(self.sessions.get_session(session_id), duplicate=True)

            log_proctor_event(session_id, event_type, {"severity": severity}, level="debug")

            profile = self._profile(session)
            decision = self.policy.evaluate(profile)
            if not decision.terminated:
                return IngestDecision(terminated=False, duplicate=False, profile=profile)

            session.status = SessionStatus.TERMINATED.value
            # same clock as the decision, so dashboards show the terminating score
            session.end_time = profile.last_event_at or utcnow()
            session.termination_reason = decision.reason
            self.db.commit()
            self.db.refresh(session)

            terminated_profile = self._profile(session)
            log_termination(session_id, profile.risk_score, profile.violation_count, decision.reason)

        self._notify(session_id, decision.reason)
        return IngestDecision(terminated=True, duplicate=False, profile=terminated_profile, reason=decision.reason)

    def _is_duplicate(self, session_id: str, event_type: str, timestamp: datetime) -> bool:
        existing = self.db.execute(
            select(ViolationEvent.id).where(
                ViolationEvent.session_id == session_id,
                ViolationEvent.event_type == event_type,
                ViolationEvent.timestamp == timestamp,
            )
        ).first()
        return existing is not None

    def _profile(self, session: ExamSession) -> SessionRiskProfile:
        records = self.sessions.records(session.id)
        # evaluated as of the newest fact in the log, so replays score identically
        as_of = max((r.timestamp for r in records), default=session.start_time)
        return self.scorer.profile(
            session.id,
            records,
            session.start_time,
            as_of,
            session_terminated=session.status == SessionStatus.TERMINATED.value,
        )

    def _decision(self, session: ExamSession, duplicate: bool) -> IngestDecision:
        profile = self._profile(session)
        terminated = session.status == SessionStatus.TERMINATED.value
        return IngestDecision(
            terminated=terminated,
            duplicate=duplicate,
            profile=profile,
            reason=session.termination_reason if terminated else None,
        )

    def _notify(self, session_id: str, reason: str):
        try:
            self.notifier(session_id, reason)
        except Exception as e:
            logger.error(f"Failed to dispatch force-submit for session {session_id}: {e}", exc_info=True)
