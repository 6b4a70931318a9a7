from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from ....core.database import get_db
from ....core.exceptions import SessionClosedError, SessionNotFoundError, ExamNotFoundError
from ....models.exam import ExamSession
from ....schemas.proctoring import (
    LogEventRequest,
    LogEventResponse,
    SessionOpenRequest,
    SessionEndRequest,
    SessionResponse,
    RiskProfileResponse,
)
from ....services.ingestion_service import IngestionService
from ....services.session_service import SessionService
from ....tasks.notifications import acknowledge_command, pending_command
from ...deps import CurrentUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()


def load_session_for(db: Session, session_id: str, current_user: CurrentUser, owner_only: bool = False) -> ExamSession:
    try:
        session = SessionService(db).get_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Exam session not found")

    is_owner = session.student_id == current_user.id
    if not is_owner and (owner_only or not current_user.is_instructor):
        raise HTTPException(status_code=403, detail="Access denied")
    return session


@router.post("/log-event", response_model=LogEventResponse)
def log_proctoring_event(
    event: LogEventRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Ingest one detector event and return the fresh termination decision"""
    load_session_for(db, event.session_id, current_user, owner_only=True)

    service = IngestionService(db)
    try:
        decision = service.ingest(
            session_id=event.session_id,
            event_type=event.event_type,
            timestamp=event.timestamp,
            severity=event.severity,
            description=event.description,
            metadata=event.metadata,
            time_into_exam=event.time_into_exam,
        )
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Exam session not found")
    except SessionClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return decision.to_dict()


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def open_proctoring_session(
    request: SessionOpenRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Register the caller's attempt so its events can be ingested"""
    try:
        return SessionService(db).open_session(
            exam_id=request.exam_id,
            student_id=current_user.id,
            session_id=request.session_id,
            student_name=request.student_name,
            student_email=request.student_email,
        )
    except ExamNotFoundError:
        raise HTTPException(status_code=404, detail="Exam not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/sessions/{session_id}/end", response_model=SessionResponse)
def end_proctoring_session(
    session_id: str,
    request: Optional[SessionEndRequest] = None,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Submit the attempt; later events for it are rejected"""
    load_session_for(db, session_id, current_user)
    try:
        reason = request.reason if request else None
        return SessionService(db).end_session(session_id, reason=reason)
    except SessionClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/sessions/{session_id}/risk", response_model=RiskProfileResponse)
def get_session_risk(
    session_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Live risk profile of an open session"""
    load_session_for(db, session_id, current_user)
    try:
        profile = SessionService(db).live_profile(session_id)
    except SessionClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return profile.to_dict()


@router.get("/violations/{session_id}")
def get_session_violations(
    session_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> List[dict]:
    """Get the full event log of a session, newest first"""
    load_session_for(db, session_id, current_user)
    records = SessionService(db).records(session_id)
    return [r.to_dict() for r in reversed(records)]


@router.get("/sessions/{session_id}/commands")
def get_pending_command(
    session_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Live command for the exam-taking surface, e.g. a forced submit"""
    load_session_for(db, session_id, current_user, owner_only=True)
    return {"session_id": session_id, "command": pending_command(session_id)}


@router.delete("/sessions/{session_id}/commands")
def acknowledge_pending_command(
    session_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    load_session_for(db, session_id, current_user, owner_only=True)
    return {"session_id": session_id, "acknowledged": acknowledge_command(session_id)}
