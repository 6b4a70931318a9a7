"""
Proctoring audit logger
"""

import logging
from typing import Dict, Any, Optional

logger = logging.getLogger("examguard.proctor")


def log_proctor_event(
    session_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "info"
):
    message = f"[PROCTOR] session={session_id} event={event_type}"

    if details:
        detail_str = " ".join(f"{k}={v}" for k, v in details.items())
        message += f" {detail_str}"

    if level == "debug":
        logger.debug(message)
    elif level == "warning":
        logger.warning(message)
    elif level == "error":
        logger.error(message)
    else:
        logger.info(message)


def log_session_opened(session_id: str, exam_id: str, student_id: str):
    log_proctor_event(session_id, "session_opened", {"exam_id": exam_id, "student_id": student_id})


def log_session_closed(session_id: str, status: str, risk_score: float):
    log_proctor_event(session_id, "session_closed", {"status": status, "risk_score": round(risk_score, 2)})


def log_termination(session_id: str, risk_score: float, violation_count: int, reason: str):
    log_proctor_event(
        session_id,
        "terminated",
        {"risk_score": round(risk_score, 2), "violations": violation_count, "reason": reason},
        level="warning"
    )
