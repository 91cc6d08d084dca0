"""
FastAPI routes – the main API surface.

Public intake routes always run as the anonymous principal, whatever headers
the caller sends. Staff routes resolve the caller through ``get_principal``
and leave every allow/deny decision to the policy engine in the services.
"""

from __future__ import annotations

import logging
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_intake.api.deps import get_principal
from clinic_intake.config import settings
from clinic_intake.jobs import tasks
from clinic_intake.jobs.followup import request_regeneration
from clinic_intake.models.database import get_db
from clinic_intake.models.intake import IntakeForm
from clinic_intake.schemas.api import (
    AuditLogResponse,
    DashboardStats,
    DocumentLink,
    HealthResponse,
    IntakeFormDetail,
    IntakeFormPage,
    IntakeFormSummary,
    IntakeFormUpdate,
    IntakeSubmission,
    IntakeSubmitted,
    JobQueued,
    MilestoneCreate,
    MyRole,
    NotificationFailureResponse,
    PatientCreate,
    PatientCreated,
    PatientResponse,
    PatientUpdate,
    RoleAssign,
    RoleResponse,
    SessionCreated,
    SessionView,
)
from clinic_intake.services import intake, roles, storage
from clinic_intake.services.audit import list_audit_logs
from clinic_intake.services.errors import AuthenticationFailed, RecordNotFound
from clinic_intake.services.notifications import list_failures
from clinic_intake.services.policy import (
    ANONYMOUS,
    Operation,
    Principal,
    ResourceKind,
    require,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _summary(form: IntakeForm) -> dict:
    return {
        "id": form.id,
        "patient": PatientResponse.model_validate(form.patient),
        "signed_at": form.signed_at,
        "created_at": form.created_at,
        "document_generated_at": form.document_generated_at,
        "email_sent": form.email_sent,
        "fax_sent": form.fax_sent,
        "status": intake.intake_status(form),
    }


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# Public intake flow (anonymous)
# ---------------------------------------------------------------------------

@router.post("/intake/sessions", response_model=SessionCreated, status_code=201)
def start_intake_session(body: PatientCreate, db: Session = Depends(get_db)):
    """Resumable intake link; holds name and phone only and expires."""
    session = intake.start_session(db, body.name, body.phone)
    return SessionCreated(resume_token=session.resume_token, expires_at=session.expires_at)


@router.get("/intake/sessions/{token}", response_model=SessionView)
def resume_intake_session(token: str, db: Session = Depends(get_db)):
    session = intake.resolve_session(db, token)
    return SessionView(
        patient_name=session.patient_name,
        patient_phone=session.patient_phone,
        expires_at=session.expires_at,
    )


@router.post("/intake/sessions/{token}/patient", response_model=PatientCreated, status_code=201)
def create_patient_from_session(token: str, db: Session = Depends(get_db)):
    return PatientCreated(patient_id=intake.create_patient_from_session(db, token))


@router.post("/patients", response_model=PatientCreated, status_code=201)
def create_patient(body: PatientCreate, db: Session = Depends(get_db)):
    return PatientCreated(patient_id=intake.create_patient(db, ANONYMOUS, body.name, body.phone))


@router.post("/intake-forms", response_model=IntakeSubmitted, status_code=201)
def submit_intake_form(
    body: IntakeSubmission,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Lock the visitor's consent answers. Document generation and the staff
    email are handed to the Celery workers after the response; their outcome
    never changes this result.
    """
    result = intake.submit_intake_form(db, body.patient_id, body.answers, body.signature)
    background_tasks.add_task(tasks.dispatch_followup, result.job_id)
    return IntakeSubmitted(intake_form_id=result.intake_form_id)


@router.post("/patients/{patient_id}/milestones", status_code=204)
def track_milestone(patient_id: UUID, body: MilestoneCreate, db: Session = Depends(get_db)):
    intake.track_milestone(db, patient_id, body.kind)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Staff: intake forms
# ---------------------------------------------------------------------------

@router.get("/intake-forms", response_model=IntakeFormPage)
def list_intake_forms(
    search: str | None = Query(None, max_length=100),
    status: Literal["document_pending", "document_generated", "email_pending", "email_sent"]
    | None = None,
    sort: Literal["created_at", "signed_at"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    forms, total = intake.list_intake_forms(
        db, principal, search=search, status=status, sort=sort, order=order,
        limit=limit, offset=offset,
    )
    return IntakeFormPage(
        items=[IntakeFormSummary(**_summary(form)) for form in forms],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/intake-forms/{intake_form_id}", response_model=IntakeFormDetail)
def get_intake_form(
    intake_form_id: UUID,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    form = intake.get_intake_form(db, principal, intake_form_id)
    answers = intake.open_answers(form)
    return IntakeFormDetail(
        **_summary(form),
        schema_version=form.schema_version,
        answers=answers.model_dump(),
    )


@router.patch("/intake-forms/{intake_form_id}", response_model=IntakeFormSummary)
def update_intake_form(
    intake_form_id: UUID,
    body: IntakeFormUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    form = intake.update_intake_form(db, principal, intake_form_id, fax_sent=body.fax_sent)
    return IntakeFormSummary(**_summary(form))


@router.delete("/intake-forms/{intake_form_id}", status_code=204)
def delete_intake_form(
    intake_form_id: UUID,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    intake.delete_intake_form(db, principal, intake_form_id)
    return Response(status_code=204)


@router.get("/intake-forms/{intake_form_id}/document", response_model=DocumentLink)
def get_document_link(
    intake_form_id: UUID,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    """Short-lived retrieval link for the private consent document."""
    require(principal, Operation.READ, ResourceKind.STORED_DOCUMENT)
    form = intake.get_intake_form(db, principal, intake_form_id)
    if not form.document_path:
        raise RecordNotFound("Document")
    ttl = settings.DOCUMENT_URL_TTL_SECONDS
    url = storage.get_document_store().signed_url(form.document_path, ttl)
    return DocumentLink(url=url, expires_in=ttl)


@router.post("/intake-forms/{intake_form_id}/regenerate", response_model=JobQueued,
             status_code=202)
def regenerate_document(
    intake_form_id: UUID,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    job = request_regeneration(db, principal, intake_form_id)
    background_tasks.add_task(tasks.dispatch_followup, job.id)
    return JobQueued(job_id=job.id, status=job.status)


@router.get("/intake-forms/{intake_form_id}/failures",
            response_model=list[NotificationFailureResponse])
def get_failures(
    intake_form_id: UUID,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return list_failures(db, principal, intake_form_id)


@router.get("/dashboard/stats", response_model=DashboardStats)
def dashboard_stats(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    return DashboardStats(**intake.dashboard_stats(db, principal))


# ---------------------------------------------------------------------------
# Staff: patients
# ---------------------------------------------------------------------------

@router.get("/patients/{patient_id}", response_model=PatientResponse)
def get_patient(
    patient_id: UUID,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return intake.get_patient(db, principal, patient_id)


@router.patch("/patients/{patient_id}", response_model=PatientResponse)
def update_patient(
    patient_id: UUID,
    body: PatientUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return intake.update_patient(db, principal, patient_id, name=body.name, phone=body.phone)


@router.delete("/patients/{patient_id}", status_code=204)
def delete_patient(
    patient_id: UUID,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    intake.delete_patient(db, principal, patient_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Roles and audit
# ---------------------------------------------------------------------------

def _authenticated(principal: Principal) -> str:
    if principal.id is None:
        raise AuthenticationFailed("Sign in required")
    return principal.id


@router.get("/roles/me", response_model=MyRole)
def my_role(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    principal_id = _authenticated(principal)
    return MyRole(principal_id=principal_id, role=roles.get_role(db, principal, principal_id))


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    return roles.list_roles(db, principal)


@router.put("/roles/{principal_id}", response_model=RoleResponse, status_code=201)
def assign_role(
    principal_id: str,
    body: RoleAssign,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return roles.assign_role(db, principal, principal_id, body.role)


@router.post("/roles/bootstrap", response_model=RoleResponse, status_code=201)
def bootstrap_admin(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    """First-run setup: claim admin while no admin exists."""
    _authenticated(principal)
    return roles.bootstrap_admin(db, principal)


@router.get("/audit-logs", response_model=list[AuditLogResponse])
def audit_logs(
    table_name: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return list_audit_logs(db, principal, table_name=table_name, limit=limit, offset=offset)
