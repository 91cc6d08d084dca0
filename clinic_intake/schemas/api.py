"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Public intake flow
# ---------------------------------------------------------------------------

class PatientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str | None = Field(None, max_length=32)


class PatientCreated(BaseModel):
    patient_id: UUID


class SessionCreated(BaseModel):
    resume_token: str
    expires_at: datetime


class SessionView(BaseModel):
    patient_name: str
    patient_phone: str | None
    expires_at: datetime


class IntakeSubmission(BaseModel):
    """Answers are checked against the versioned answer schema, not here."""
    patient_id: UUID
    answers: dict[str, Any]
    signature: str | None = Field(None, description="data:image/png;base64,... drawn signature")


class IntakeSubmitted(BaseModel):
    intake_form_id: UUID
    status: str = "submitted"
    message: str = "Your intake forms have been submitted. Clinic staff will be in touch."


class MilestoneCreate(BaseModel):
    kind: Literal["telehealth_redirect"]


# ---------------------------------------------------------------------------
# Staff views
# ---------------------------------------------------------------------------

class PatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str | None
    created_at: datetime


class PatientUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    phone: str | None = Field(None, max_length=32)


class IntakeStatus(BaseModel):
    state: str
    document: str
    email_sent: bool


class IntakeFormSummary(BaseModel):
    id: UUID
    patient: PatientResponse
    signed_at: datetime | None
    created_at: datetime
    document_generated_at: datetime | None
    email_sent: bool
    fax_sent: bool
    status: IntakeStatus


class IntakeFormDetail(IntakeFormSummary):
    schema_version: int
    answers: dict[str, Any]


class IntakeFormPage(BaseModel):
    items: list[IntakeFormSummary]
    total: int
    limit: int
    offset: int


class IntakeFormUpdate(BaseModel):
    fax_sent: bool


class DocumentLink(BaseModel):
    url: str
    expires_in: int


class JobQueued(BaseModel):
    job_id: UUID
    status: str


class NotificationFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    intake_form_id: UUID
    stage: str
    error_message: str
    created_at: datetime


class DashboardStats(BaseModel):
    total_patients: int
    completed_forms: int
    pending_forms: int
    generated_documents: int


# ---------------------------------------------------------------------------
# Roles and audit
# ---------------------------------------------------------------------------

class RoleAssign(BaseModel):
    role: Literal["admin", "medical_staff", "receptionist"]


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    principal_id: str
    role: str
    granted_by: str | None
    granted_at: datetime


class MyRole(BaseModel):
    principal_id: str
    role: str | None


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor: str
    action: str
    table_name: str
    record_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    created_at: datetime


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
