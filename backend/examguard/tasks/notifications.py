from celery import current_task
from examguard.core.celery_app import celery_app
from examguard.core.cache import cache
from examguard.core.config import settings
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

FORCE_SUBMIT = "force_submit"


def live_notification_key(session_id: str) -> str:
    return f"live_notification:{session_id}"


def notification_history_key(session_id: str) -> str:
    return f"session_notifications:{session_id}"


@celery_app.task(bind=True, name="send_force_submit_command")
def send_force_submit_command(self, session_id: str, reason: str):
    """Publish a force-submit command for the exam-taking surface of one session"""
    command = {
        'type': FORCE_SUBMIT,
        'session_id': session_id,
        'title': 'Exam submitted',
        'message': 'Your exam was submitted automatically because of proctoring violations.',
        'reason': reason,
        'timestamp': datetime.utcnow().isoformat()
    }

    published = cache.set(live_notification_key(session_id), command, ttl=settings.live_notification_ttl)

    history = cache.get(notification_history_key(session_id)) or []
    history.append(command)
    history = history[-10:]
    cache.set(notification_history_key(session_id), history, ttl=86400)

    if current_task and current_task.request.id:
        logger.info(f"Force-submit task {current_task.request.id} for session {session_id}: published={published}")
    else:
        logger.info(f"Force-submit for session {session_id}: published={published}")

    return {
        'session_id': session_id,
        'published': published,
        'command': command
    }


def dispatch_force_submit(session_id: str, reason: str):
    """Queue the force-submit command; runs inline when tasks are eager"""
    send_force_submit_command.delay(session_id, reason)
    logger.info(f"Force-submit queued for session {session_id}: {reason}")


def pending_command(session_id: str):
    """Latest undelivered command for a session, if any"""
    return cache.get(live_notification_key(session_id))


def acknowledge_command(session_id: str) -> bool:
    """Clear the live command once the exam-taking surface has acted on it"""
    return cache.delete(live_notification_key(session_id))
