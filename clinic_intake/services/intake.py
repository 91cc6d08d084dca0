"""
Patient record and intake form lifecycle.

    Created ──(visitor fills form, client-side draft)──▶ Submitted/Locked

Submission is a single upsert keyed by patient id, run as the trusted
backend: the anonymous caller never writes intake_forms directly and never
gets a row back, only the new form id. Staff reads and mutations go through
the policy engine and are written to the audit log.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_intake.config import settings
from clinic_intake.jobs.followup import SUPERSEDED, enqueue_followup
from clinic_intake.models.intake import (
    MILESTONE_KINDS,
    FollowUpJob,
    IntakeForm,
    IntakeMilestone,
    IntakeSession,
    Patient,
    utcnow,
)
from clinic_intake.schemas.intake_answers import ANSWER_SCHEMAS, IntakeAnswers
from clinic_intake.services.audit import log_action, snapshot
from clinic_intake.services.documents import decode_signature
from clinic_intake.services.encryption import get_encryption_service
from clinic_intake.services.errors import (
    AuthorizationDenied,
    ExpiredOrInvalidSession,
    PersistenceFailure,
    RecordNotFound,
    ValidationFailed,
)
from clinic_intake.services.policy import (
    ANONYMOUS,
    TRUSTED_BACKEND,
    Operation,
    Principal,
    ResourceKind,
    SessionTokenCheck,
    authorize,
    require,
)
from clinic_intake.services.validation import validate_against_schema

logger = logging.getLogger(__name__)

PATIENT_FIELDS = ("name", "phone")
FORM_STATUS_FIELDS = ("signed_at", "document_path", "email_sent", "fax_sent")
SORT_COLUMNS = {"created_at": IntakeForm.created_at, "signed_at": IntakeForm.signed_at}


@dataclass(frozen=True)
class SubmissionResult:
    intake_form_id: UUID
    job_id: UUID


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Persisting %s failed: %s", what, exc)
        raise PersistenceFailure() from exc


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed([{"field": "name", "message": "Name is required"}])
    return name


# ---------------------------------------------------------------------------
# Public intake flow
# ---------------------------------------------------------------------------

def create_patient(db: Session, principal: Principal, name: str, phone: str | None) -> UUID:
    """Create-only: the caller learns the new id and nothing else."""
    require(principal, Operation.CREATE, ResourceKind.PATIENT)
    patient = Patient(name=_clean_name(name), phone=(phone or "").strip() or None)
    db.add(patient)
    _commit(db, "patient")
    logger.info("Created patient %s", patient.id)
    return patient.id


def validate_submission(answers: dict[str, Any], signature: str | None) -> dict[str, Any]:
    """Check the answer document and signature. Returns the document to seal."""
    if not isinstance(answers, dict):
        raise ValidationFailed([{"field": "answers", "message": "Answers must be an object"}])

    version = answers.get("schema_version")
    schema = ANSWER_SCHEMAS.get(version) if isinstance(version, int) else None
    if schema is None:
        raise ValidationFailed(
            [{"field": "schema_version", "message": f"Unsupported answers version: {version!r}"}]
        )
    errors = validate_against_schema(answers, schema)

    if not signature:
        errors.append({"field": "signature", "message": "Signature is required"})
    else:
        try:
            png = decode_signature(signature)
        except ValueError as exc:
            errors.append({"field": "signature", "message": str(exc)})
        else:
            if len(png) > settings.SIGNATURE_MAX_BYTES:
                errors.append({"field": "signature", "message": "Signature image is too large"})

    if errors:
        raise ValidationFailed(errors)
    return {**answers, "signature": signature}


def _upsert_intake_form(db: Session, values: dict[str, Any]) -> UUID:
    table = IntakeForm.__table__
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = pg_insert
    elif dialect == "sqlite":
        insert = sqlite_insert
    else:
        raise RuntimeError(f"Unsupported database dialect for intake upsert: {dialect}")

    stmt = insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.patient_id],
        set_={
            "encrypted_form_data": stmt.excluded.encrypted_form_data,
            "schema_version": stmt.excluded.schema_version,
            "signed_at": stmt.excluded.signed_at,
            "document_path": None,
            "document_generated_at": None,
            "email_sent": False,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(table.c.id)
    return db.execute(stmt).scalar_one()


def submit_intake_form(
    db: Session,
    patient_id: UUID,
    answers: dict[str, Any],
    signature: str | None,
    signed_at: datetime | None = None,
) -> SubmissionResult:
    """
    Lock the visitor's answers for ``patient_id``.

    Creates the form, or overwrites an existing one (retry / resubmission):
    answers and signed_at are replaced and the document and email state go
    back to pending. The follow-up job is queued in the same transaction.
    """
    document = validate_submission(answers, signature)
    require(TRUSTED_BACKEND, Operation.CREATE, ResourceKind.INTAKE_FORM)

    # Unknown patients get the same answer as a denied caller.
    if db.get(Patient, patient_id) is None:
        raise AuthorizationDenied()

    now = signed_at or utcnow()
    sealed = get_encryption_service().seal_document(document)
    try:
        form_id = _upsert_intake_form(
            db,
            {
                "id": uuid.uuid4(),
                "patient_id": patient_id,
                "encrypted_form_data": sealed,
                "schema_version": document["schema_version"],
                "signed_at": now,
                "document_path": None,
                "document_generated_at": None,
                "email_sent": False,
                "fax_sent": False,
                "created_at": now,
                "updated_at": now,
            },
        )
        db.execute(
            update(FollowUpJob)
            .where(
                FollowUpJob.intake_form_id == form_id,
                FollowUpJob.kind == "intake_followup",
                FollowUpJob.status == "pending",
            )
            .values(status="failed", last_error=SUPERSEDED)
        )
        job = enqueue_followup(db, form_id, "intake_followup", now)
        log_action(
            db,
            TRUSTED_BACKEND,
            action="INTAKE_FORM_SUBMIT",
            table_name="intake_forms",
            record_id=form_id,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Intake submission for patient %s failed: %s", patient_id, exc)
        raise PersistenceFailure() from exc

    logger.info("Intake form %s locked for patient %s", form_id, patient_id)
    return SubmissionResult(intake_form_id=form_id, job_id=job.id)


def track_milestone(
    db: Session, patient_id: UUID, kind: str, occurred_at: datetime | None = None
) -> None:
    """Optional telemetry, e.g. the visitor was handed off to telehealth."""
    if kind not in MILESTONE_KINDS:
        raise ValidationFailed([{"field": "kind", "message": f"Unknown milestone: {kind}"}])
    require(TRUSTED_BACKEND, Operation.CREATE, ResourceKind.INTAKE_MILESTONE)
    if db.get(Patient, patient_id) is None:
        raise AuthorizationDenied()
    db.add(IntakeMilestone(patient_id=patient_id, kind=kind, occurred_at=occurred_at or utcnow()))
    _commit(db, "milestone")
    logger.info("Milestone %s recorded for patient %s", kind, patient_id)


# ---------------------------------------------------------------------------
# Resumable intake sessions (name + phone only, expiring)
# ---------------------------------------------------------------------------

def start_session(
    db: Session, name: str, phone: str | None, now: datetime | None = None
) -> IntakeSession:
    require(ANONYMOUS, Operation.CREATE, ResourceKind.INTAKE_SESSION)
    now = now or utcnow()
    session = IntakeSession(
        token_secret=secrets.token_urlsafe(32),
        patient_name=_clean_name(name),
        patient_phone=(phone or "").strip() or None,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.INTAKE_SESSION_TTL_MINUTES),
    )
    db.add(session)
    _commit(db, "intake session")
    return session


def resolve_session(db: Session, token: str, now: datetime | None = None) -> IntakeSession:
    """
    The live, incomplete session for a ``<session id>.<secret>`` resume token,
    or ExpiredOrInvalidSession. A wrong secret is indistinguishable from an
    unknown session.
    """
    raw_id, _, secret = (token or "").partition(".")
    try:
        session_id = UUID(raw_id)
    except ValueError:
        raise ExpiredOrInvalidSession() from None

    session = db.scalar(
        select(IntakeSession).where(
            IntakeSession.id == session_id,
            IntakeSession.completed.is_(False),
            IntakeSession.expires_at > (now or utcnow()),
        )
    )
    if session is None or not authorize(
        ANONYMOUS,
        Operation.READ,
        ResourceKind.INTAKE_SESSION,
        SessionTokenCheck(presented_secret=secret, token_secret=session.token_secret),
    ):
        raise ExpiredOrInvalidSession()
    return session


def create_patient_from_session(db: Session, token: str, now: datetime | None = None) -> UUID:
    session = resolve_session(db, token, now)
    require(ANONYMOUS, Operation.CREATE, ResourceKind.PATIENT)
    patient = Patient(name=session.patient_name, phone=session.patient_phone)
    db.add(patient)
    session.completed = True
    _commit(db, "patient from session")
    logger.info("Created patient %s from intake session", patient.id)
    return patient.id


def cleanup_expired_sessions(db: Session, now: datetime | None = None) -> int:
    """Delete expired, incomplete sessions. Running it twice is harmless."""
    require(TRUSTED_BACKEND, Operation.DELETE, ResourceKind.INTAKE_SESSION)
    result = db.execute(
        delete(IntakeSession).where(
            IntakeSession.expires_at < (now or utcnow()),
            IntakeSession.completed.is_(False),
        )
    )
    _commit(db, "session cleanup")
    if result.rowcount:
        logger.info("Removed %d expired intake sessions", result.rowcount)
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Staff side
# ---------------------------------------------------------------------------

def open_answers(form: IntakeForm) -> IntakeAnswers:
    return IntakeAnswers.model_validate(
        get_encryption_service().open_document(form.encrypted_form_data)
    )


def intake_status(form: IntakeForm) -> dict[str, Any]:
    """Derived state for staff reporting. Email state never gates the visitor."""
    return {
        "state": "submitted" if form.is_locked else "created",
        "document": "generated" if form.document_path else "pending",
        "email_sent": form.email_sent,
    }


def _load_form(db: Session, intake_form_id: UUID) -> IntakeForm:
    form = db.scalar(
        select(IntakeForm)
        .where(IntakeForm.id == intake_form_id)
        .execution_options(populate_existing=True)
    )
    if form is None:
        raise RecordNotFound("Intake form")
    return form


def _load_patient(db: Session, patient_id: UUID) -> Patient:
    patient = db.get(Patient, patient_id)
    if patient is None:
        raise RecordNotFound("Patient")
    return patient


def list_intake_forms(
    db: Session,
    principal: Principal,
    *,
    search: str | None = None,
    status: str | None = None,
    sort: str = "created_at",
    order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[IntakeForm], int]:
    """Forms joined with their patient, newest first by default."""
    require(principal, Operation.READ, ResourceKind.INTAKE_FORM)
    require(principal, Operation.READ, ResourceKind.PATIENT)

    query = select(IntakeForm).join(Patient, IntakeForm.patient_id == Patient.id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(Patient.name.ilike(pattern), Patient.phone.like(pattern)))
    if status == "document_pending":
        query = query.where(IntakeForm.document_path.is_(None))
    elif status == "document_generated":
        query = query.where(IntakeForm.document_path.is_not(None))
    elif status == "email_pending":
        query = query.where(IntakeForm.email_sent.is_(False))
    elif status == "email_sent":
        query = query.where(IntakeForm.email_sent.is_(True))

    total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
    column = SORT_COLUMNS.get(sort, IntakeForm.created_at)
    ordering = column.asc() if order == "asc" else column.desc()
    forms = list(
        db.scalars(
            query.order_by(ordering, IntakeForm.id)
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
    )
    for form in forms:
        log_action(db, principal, action="INTAKE_FORM_VIEW", table_name="intake_forms",
                   record_id=form.id)
    _commit(db, "audit entries")
    return forms, total


def get_intake_form(db: Session, principal: Principal, intake_form_id: UUID) -> IntakeForm:
    require(principal, Operation.READ, ResourceKind.INTAKE_FORM)
    form = _load_form(db, intake_form_id)
    log_action(db, principal, action="INTAKE_FORM_VIEW", table_name="intake_forms",
               record_id=form.id)
    _commit(db, "audit entry")
    return form


def update_intake_form(
    db: Session, principal: Principal, intake_form_id: UUID, *, fax_sent: bool
) -> IntakeForm:
    """Staff bookkeeping only; answers stay locked."""
    require(principal, Operation.UPDATE, ResourceKind.INTAKE_FORM)
    form = _load_form(db, intake_form_id)
    before = snapshot(form, FORM_STATUS_FIELDS)
    form.fax_sent = fax_sent
    db.flush()
    log_action(db, principal, action="INTAKE_FORM_UPDATE", table_name="intake_forms",
               record_id=form.id, old_values=before, new_values=snapshot(form, FORM_STATUS_FIELDS))
    _commit(db, "intake form update")
    return form


def delete_intake_form(db: Session, principal: Principal, intake_form_id: UUID) -> None:
    require(principal, Operation.DELETE, ResourceKind.INTAKE_FORM)
    form = _load_form(db, intake_form_id)
    before = snapshot(form, ("patient_id",) + FORM_STATUS_FIELDS)
    db.delete(form)
    log_action(db, principal, action="INTAKE_FORM_DELETE", table_name="intake_forms",
               record_id=intake_form_id, old_values=before)
    _commit(db, "intake form delete")


def get_patient(db: Session, principal: Principal, patient_id: UUID) -> Patient:
    require(principal, Operation.READ, ResourceKind.PATIENT)
    patient = _load_patient(db, patient_id)
    log_action(db, principal, action="PATIENT_VIEW", table_name="patients", record_id=patient.id)
    _commit(db, "audit entry")
    return patient


def update_patient(
    db: Session,
    principal: Principal,
    patient_id: UUID,
    *,
    name: str | None = None,
    phone: str | None = None,
) -> Patient:
    require(principal, Operation.UPDATE, ResourceKind.PATIENT)
    patient = _load_patient(db, patient_id)
    before = snapshot(patient, PATIENT_FIELDS)
    if name is not None:
        patient.name = _clean_name(name)
    if phone is not None:
        patient.phone = phone.strip() or None
    db.flush()
    log_action(db, principal, action="PATIENT_UPDATE", table_name="patients",
               record_id=patient.id, old_values=before, new_values=snapshot(patient, PATIENT_FIELDS))
    _commit(db, "patient update")
    return patient


def delete_patient(db: Session, principal: Principal, patient_id: UUID) -> None:
    """Admin only. Removes the patient's form, milestones and follow-up state."""
    require(principal, Operation.DELETE, ResourceKind.PATIENT)
    patient = _load_patient(db, patient_id)
    before = snapshot(patient, PATIENT_FIELDS)
    db.delete(patient)
    log_action(db, principal, action="PATIENT_DELETE", table_name="patients",
               record_id=patient_id, old_values=before)
    _commit(db, "patient delete")


def dashboard_stats(db: Session, principal: Principal) -> dict[str, int]:
    require(principal, Operation.READ, ResourceKind.INTAKE_FORM)
    require(principal, Operation.READ, ResourceKind.PATIENT)
    total_patients = db.scalar(select(func.count(Patient.id))) or 0
    completed = db.scalar(
        select(func.count(IntakeForm.id)).where(IntakeForm.signed_at.is_not(None))
    ) or 0
    generated = db.scalar(
        select(func.count(IntakeForm.id)).where(IntakeForm.document_path.is_not(None))
    ) or 0
    return {
        "total_patients": total_patients,
        "completed_forms": completed,
        # patients who started intake but have not submitted yet
        "pending_forms": max(total_patients - completed, 0),
        "generated_documents": generated,
    }
