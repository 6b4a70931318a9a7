from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
import logging

from ....core.database import get_db
from ....core.exceptions import ExamNotFoundError
from ....services.aggregation_service import AggregationService
from ....services.export_service import ExportService
from ....services.session_service import SessionService
from ...deps import CurrentUser, get_current_user, require_instructor
from .proctoring import load_session_for

logger = logging.getLogger(__name__)

router = APIRouter()


def check_exam_access(db: Session, exam_id: str, current_user: CurrentUser):
    try:
        exam = SessionService(db).get_exam(exam_id)
    except ExamNotFoundError:
        raise HTTPException(status_code=404, detail="Exam not found")

    if exam.instructor_id and exam.instructor_id != current_user.id and current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Access denied")
    return exam


@router.get("/dashboard/{exam_id}")
def get_proctoring_dashboard(
    exam_id: str,
    current_user: CurrentUser = Depends(require_instructor),
    db: Session = Depends(get_db)
):
    """Overview, per-student risk, violation breakdowns and anomalies for an exam"""
    check_exam_access(db, exam_id, current_user)
    return AggregationService(db).dashboard(exam_id)


@router.get("/student/{session_id}/summary")
def get_student_summary(
    session_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Violation summary, flagged behaviours and recommendations for one attempt"""
    load_session_for(db, session_id, current_user)
    return AggregationService(db).student_summary(session_id)


@router.get("/export/{exam_id}")
def export_violations(
    exam_id: str,
    format: str = Query("json", pattern="^(json|csv)$"),
    current_user: CurrentUser = Depends(require_instructor),
    db: Session = Depends(get_db)
):
    """Flat violation rows for an exam"""
    check_exam_access(db, exam_id, current_user)
    service = ExportService(db)
    rows = service.rows(exam_id)

    if format == "csv":
        return PlainTextResponse(service.to_csv(rows), media_type="text/csv")
    return {"exam_id": exam_id, "count": len(rows), "rows": rows}
