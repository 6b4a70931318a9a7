from examguard.core.celery_app import celery_app
from examguard.core.database import SessionLocal
from examguard.core.cache import cache
from examguard.core.config import settings
from examguard.models.exam import ExamSession, OPEN_SESSION_STATUSES
from examguard.models.violation_event import ViolationEvent
from sqlalchemy import select, delete
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="purge_expired_violation_logs")
def purge_expired_violation_logs():
    """Delete event logs of sessions that ended before the retention window"""
    db = SessionLocal()
    try:
        return purge_expired_logs(db)
    except Exception as exc:
        logger.error(f"Error in purge_expired_violation_logs: {exc}")
        raise
    finally:
        db.close()


def purge_expired_logs(db: Session, now: Optional[datetime] = None, retention_days: Optional[int] = None) -> dict:
    now = now or datetime.utcnow()
    retention_days = settings.event_retention_days if retention_days is None else retention_days
    cutoff = now - timedelta(days=retention_days)

    expired_ids = db.execute(
        select(ExamSession.id).where(
            ExamSession.end_time.is_not(None),
            ExamSession.end_time < cutoff,
            ExamSession.status.not_in(OPEN_SESSION_STATUSES),
        )
    ).scalars().all()

    if not expired_ids:
        return {'sessions_purged': 0, 'events_deleted': 0}

    try:
        result = db.execute(delete(ViolationEvent).where(ViolationEvent.session_id.in_(expired_ids)))
        db.commit()
    except Exception:
        db.rollback()
        raise

    for session_id in expired_ids:
        cache.delete_pattern(f"*:{session_id}")

    logger.info(f"Purged {result.rowcount} events from {len(expired_ids)} sessions ended before {cutoff.isoformat()}")
    return {
        'sessions_purged': len(expired_ids),
        'events_deleted': result.rowcount
    }
