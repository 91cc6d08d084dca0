"""
Follow-up jobs: consent document generation and staff notification.

Jobs are rows in ``followup_jobs`` written in the same transaction as the
submission they belong to, so a locked form always has its follow-up queued.
Celery workers run them (see ``clinic_intake.jobs.tasks``). A job is claimed
with a lease; a worker that dies mid-job leaves it reclaimable, which makes
delivery at-least-once. Both steps are idempotent: the document is
overwritten and the email step is skipped once ``email_sent`` is set.

Each job covers the answers signed at ``form_signed_at``. When the form has
been resubmitted since, the job is superseded and touches nothing.

Failures never propagate to the visitor. Each failed step appends one
NotificationFailure row and the job goes back to pending for a Celery retry,
until ``max_attempts``; after that only staff-triggered regeneration runs it
again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_intake.config import settings
from clinic_intake.models import database
from clinic_intake.models.intake import FollowUpJob, IntakeForm, utcnow
from clinic_intake.schemas.intake_answers import IntakeAnswers
from clinic_intake.services import notifications, storage
from clinic_intake.services.audit import log_action
from clinic_intake.services.documents import generate_document
from clinic_intake.services.encryption import get_encryption_service
from clinic_intake.services.errors import DownstreamFailure, PersistenceFailure, RecordNotFound
from clinic_intake.services.policy import Operation, Principal, ResourceKind, require

logger = logging.getLogger(__name__)

SUPERSEDED = "Superseded by resubmission"


def _lease_expiry(now: datetime) -> datetime:
    return now + timedelta(seconds=settings.JOB_LEASE_SECONDS)


def enqueue_followup(
    db: Session, intake_form_id: UUID, kind: str, form_signed_at: datetime
) -> FollowUpJob:
    """Queue a job inside the caller's transaction."""
    job = FollowUpJob(
        intake_form_id=intake_form_id,
        kind=kind,
        status="pending",
        attempts=0,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        form_signed_at=form_signed_at,
        next_attempt_at=_lease_expiry(utcnow()),
    )
    db.add(job)
    db.flush()
    return job


def request_regeneration(db: Session, principal: Principal, intake_form_id: UUID) -> FollowUpJob:
    """Staff-triggered document regeneration (explicit retry path)."""
    require(principal, Operation.UPDATE, ResourceKind.INTAKE_FORM)
    form = db.get(IntakeForm, intake_form_id)
    if form is None or not form.is_locked:
        raise RecordNotFound("Intake form")
    try:
        job = enqueue_followup(db, form.id, "regenerate_document", form.signed_at)
        log_action(db, principal, action="INTAKE_FORM_REGENERATE", table_name="intake_forms",
                   record_id=form.id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceFailure() from exc
    logger.info("Regeneration of intake form %s requested by %s", form.id, principal.id)
    return job


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _document_step(
    db: Session, form: IntakeForm, job: FollowUpJob, store: storage.DocumentStore
) -> None:
    generate_document(db, form.id, store, signed_at=job.form_signed_at)


def _email_step(
    db: Session,
    form: IntakeForm,
    job: FollowUpJob,
    store: storage.DocumentStore,
    mailer: notifications.Mailer,
) -> None:
    try:
        answers = IntakeAnswers.model_validate(
            get_encryption_service().open_document(form.encrypted_form_data)
        )
    except ValueError as exc:
        raise DownstreamFailure("email", f"Could not read intake answers: {exc}") from exc

    attachment = None
    document_url = None
    if form.document_path:
        try:
            attachment = notifications.EmailAttachment(
                filename=form.document_path.rsplit("/", 1)[-1],
                content=store.get(form.document_path),
            )
            document_url = store.signed_url(form.document_path, settings.DOCUMENT_URL_TTL_SECONDS)
        except DownstreamFailure as exc:
            # still notify staff; the dashboard shows the document
            logger.warning("Sending notification for %s without document: %s", form.id, exc)

    subject, body = notifications.build_notification(
        form.patient.name, form.patient.phone, answers, form.signed_at, document_url
    )
    result = mailer.send(settings.EMAIL_TO, subject, body, attachment)
    if not result.ok:
        raise DownstreamFailure("email", result.error or "Email dispatch failed")

    marked = db.execute(
        update(IntakeForm)
        .where(IntakeForm.id == form.id, IntakeForm.signed_at == job.form_signed_at)
        .values(email_sent=True)
        .execution_options(synchronize_session=False)
    )
    db.refresh(form)
    if marked.rowcount != 1:
        logger.warning("Intake form %s was resubmitted while its notification was sent", form.id)


def _is_current(db: Session, job: FollowUpJob) -> bool:
    """Whether the form still carries the answers the job was queued for."""
    return db.scalar(
        select(IntakeForm.id).where(
            IntakeForm.id == job.intake_form_id,
            IntakeForm.signed_at == job.form_signed_at,
        )
    ) is not None


def _run_steps(
    db: Session,
    job: FollowUpJob,
    store: storage.DocumentStore,
    mailer: notifications.Mailer,
) -> list[str]:
    form = db.get(IntakeForm, job.intake_form_id)
    if form is None:
        return ["Intake form no longer exists"]

    errors: list[str] = []
    if job.kind == "regenerate_document" or form.document_path is None:
        try:
            _document_step(db, form, job, store)
        except DownstreamFailure as exc:
            notifications.record_failure(db, form.id, "document", exc.message)
            errors.append(exc.message)

    if job.kind == "intake_followup" and not form.email_sent:
        try:
            _email_step(db, form, job, store, mailer)
        except DownstreamFailure as exc:
            notifications.record_failure(db, form.id, "email", exc.message)
            errors.append(exc.message)
    return errors


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def _claim(db: Session, job_id: UUID, now: datetime) -> bool:
    result = db.execute(
        update(FollowUpJob)
        .where(
            FollowUpJob.id == job_id,
            or_(
                FollowUpJob.status == "pending",
                and_(FollowUpJob.status == "running", FollowUpJob.next_attempt_at <= now),
            ),
        )
        .values(
            status="running",
            attempts=FollowUpJob.attempts + 1,
            next_attempt_at=_lease_expiry(now),
        )
    )
    db.commit()
    return result.rowcount == 1


def run_job(
    job_id: UUID,
    store: storage.DocumentStore | None = None,
    mailer: notifications.Mailer | None = None,
    now: datetime | None = None,
) -> str | None:
    """
    Claim and run one job. Returns the resulting status, or None when the
    job was not claimable (finished, or running under a live lease).

    A ``pending`` result means a step failed and attempts remain; the job's
    deadline moves one lease ahead so the sweep recovers it if no retry
    arrives. Never raises.
    """
    now = now or utcnow()
    db = database.SessionLocal()
    try:
        if not _claim(db, job_id, now):
            return None
        job = db.scalar(
            select(FollowUpJob)
            .where(FollowUpJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        if not _is_current(db, job):
            job.status = "failed"
            job.last_error = SUPERSEDED
            db.commit()
            logger.info("Follow-up job %s skipped: %s", job.id, SUPERSEDED)
            return job.status

        errors = _run_steps(
            db,
            job,
            store or storage.get_document_store(),
            mailer or notifications.get_mailer(),
        )
        if not errors:
            job.status = "succeeded"
            job.last_error = None
        elif job.attempts >= job.max_attempts:
            job.status = "failed"
            job.last_error = "; ".join(errors)
        else:
            job.status = "pending"
            job.next_attempt_at = _lease_expiry(now)
            job.last_error = "; ".join(errors)
        db.commit()
        logger.info("Follow-up job %s (%s) finished: %s", job.id, job.kind, job.status)
        return job.status
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Follow-up job %s could not be recorded; lease will expire", job_id)
        return None
    finally:
        db.close()


def due_job_ids(db: Session, now: datetime) -> list[UUID]:
    """Jobs past their deadline: pending ones nobody retried, running ones whose lease expired."""
    return list(
        db.scalars(
            select(FollowUpJob.id)
            .where(
                FollowUpJob.status.in_(("pending", "running")),
                FollowUpJob.next_attempt_at <= now,
            )
            .order_by(FollowUpJob.next_attempt_at)
        )
    )
