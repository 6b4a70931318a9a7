from celery import Celery
from examguard.core.config import settings
import logging

logging.getLogger('celery.backends.redis').setLevel(logging.ERROR)

celery_app = Celery(
    "examguard_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        'examguard.tasks.notifications',
        'examguard.tasks.maintenance',
    ]
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_routes={
        'send_force_submit_command': {'queue': 'notifications'},
        'purge_expired_violation_logs': {'queue': 'maintenance'},
    },
    task_always_eager=settings.celery_task_always_eager,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    task_soft_time_limit=60,
    task_time_limit=120,
    result_expires=3600,
    broker_connection_retry_on_startup=True,
    task_default_retry_delay=5,
    task_max_retries=3,
    beat_schedule={
        'purge-expired-violation-logs': {
            'task': 'purge_expired_violation_logs',
            'schedule': 86400.0,
        },
    },
)

if __name__ == '__main__':
    celery_app.start()
