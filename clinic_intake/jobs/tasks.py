"""
Celery tasks for follow-up jobs and intake session cleanup.

The ``followup_jobs`` row is the source of truth; a task message only asks a
worker to claim and run it. A lost message is harmless because the beat
sweep re-dispatches every job whose recovery deadline has passed.
"""

import logging
from typing import Dict
from uuid import UUID

from kombu.exceptions import OperationalError

from clinic_intake.celery_app import celery_app
from clinic_intake.config import settings
from clinic_intake.jobs import followup
from clinic_intake.models import database
from clinic_intake.models.intake import utcnow
from clinic_intake.services.errors import DownstreamFailure
from clinic_intake.services.intake import cleanup_expired_sessions

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="clinic_intake.jobs.tasks.run_followup_job",
    autoretry_for=(DownstreamFailure,),
    retry_backoff=settings.JOB_BACKOFF_SECONDS,
    retry_backoff_max=settings.JOB_LEASE_SECONDS,
    retry_jitter=False,
    max_retries=settings.JOB_MAX_ATTEMPTS,
)
def run_followup_job(self, job_id: str) -> str | None:
    """Run one follow-up job; a step failure left for retry raises DownstreamFailure."""
    status = followup.run_job(UUID(job_id))
    if status == "pending":
        raise DownstreamFailure("followup", f"Follow-up job {job_id} will be retried")
    return status


@celery_app.task(name="clinic_intake.jobs.tasks.dispatch_due_jobs")
def dispatch_due_jobs() -> Dict[str, int]:
    """Queue every job that is pending past its deadline or whose lease expired."""
    db = database.SessionLocal()
    try:
        job_ids = followup.due_job_ids(db, utcnow())
    finally:
        db.close()

    for job_id in job_ids:
        dispatch_followup(job_id)
    if job_ids:
        logger.info("Re-dispatched %s follow-up jobs", len(job_ids))
    return {"dispatched": len(job_ids)}


@celery_app.task(name="clinic_intake.jobs.tasks.cleanup_sessions")
def cleanup_sessions() -> Dict[str, int]:
    db = database.SessionLocal()
    try:
        removed = cleanup_expired_sessions(db)
    finally:
        db.close()
    return {"removed": removed}


def dispatch_followup(job_id: UUID) -> None:
    """Send a job to the workers. An unreachable broker leaves it to the sweep."""
    try:
        run_followup_job.delay(str(job_id))
    except OperationalError as exc:
        logger.warning("Could not dispatch follow-up job %s, the sweep will pick it up: %s",
                       job_id, exc)
