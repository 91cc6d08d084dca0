"""Celery configuration for follow-up jobs and periodic sweeps.

Worker:  celery -A clinic_intake.celery_app worker
Beat:    celery -A clinic_intake.celery_app beat
"""

from celery import Celery
from celery.schedules import crontab

from clinic_intake.config import settings

celery_app = Celery(
    "clinic_intake",
    broker=settings.CELERY_BROKER_URL,
    include=["clinic_intake.jobs.tasks"],
)

celery_app.conf.update(
    # Task serialization
    task_serializer="json",
    accept_content=["json"],
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,
    worker_prefetch_multiplier=1,
    # Beat schedule for periodic tasks
    beat_schedule={
        # Re-dispatch jobs whose message was lost or whose worker died
        "dispatch-due-followup-jobs": {
            "task": "clinic_intake.jobs.tasks.dispatch_due_jobs",
            "schedule": float(settings.WORKER_POLL_SECONDS),
        },
        "cleanup-expired-intake-sessions": {
            "task": "clinic_intake.jobs.tasks.cleanup_sessions",
            "schedule": crontab(minute="*/15"),
        },
    },
)

app = celery_app
