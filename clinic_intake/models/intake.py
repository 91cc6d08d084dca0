"""
Data models for the clinic intake workflow.

- Patient identity captured at intake start
- One locked IntakeForm per patient (unique patient reference)
- Role assignments, audit trail and notification failure log
- Ephemeral intake sessions and the follow-up job queue
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from clinic_intake.models.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

ROLE_VALUES = ("admin", "medical_staff", "receptionist")
JOB_KINDS = ("intake_followup", "regenerate_document")
JOB_STATUSES = ("pending", "running", "succeeded", "failed")
FAILURE_STAGES = ("document", "email")
MILESTONE_KINDS = ("telehealth_redirect",)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Patient – identity captured by the public intake start step
# ---------------------------------------------------------------------------
class Patient(Base):
    __tablename__ = "patients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    phone = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    intake_form = relationship(
        "IntakeForm",
        back_populates="patient",
        uselist=False,
        cascade="all, delete-orphan",
    )
    milestones = relationship(
        "IntakeMilestone", back_populates="patient", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_patients_created_at", "created_at"),)


# ---------------------------------------------------------------------------
# Intake form – the signed consent submission, one per patient
# ---------------------------------------------------------------------------
class IntakeForm(Base):
    __tablename__ = "intake_forms"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(
        Uuid,
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        comment="At most one intake form per patient",
    )
    encrypted_form_data = Column(
        Text, nullable=False, comment="Fernet-encrypted answer document incl. signature"
    )
    schema_version = Column(Integer, nullable=False, default=1)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    document_path = Column(Text, nullable=True, comment="Object key in the private bucket")
    document_generated_at = Column(DateTime(timezone=True), nullable=True)
    email_sent = Column(Boolean, default=False, nullable=False)
    fax_sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    patient = relationship("Patient", back_populates="intake_form")
    failures = relationship(
        "NotificationFailure", back_populates="intake_form", cascade="all, delete-orphan"
    )
    jobs = relationship("FollowUpJob", back_populates="intake_form", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_intake_forms_created_at", "created_at"),
        Index("ix_intake_forms_signed_at", "signed_at"),
    )

    @property
    def is_locked(self) -> bool:
        return self.signed_at is not None


# ---------------------------------------------------------------------------
# Role assignment – one role per authenticated principal
# ---------------------------------------------------------------------------
class RoleAssignment(Base):
    __tablename__ = "role_assignments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    principal_id = Column(String(128), unique=True, nullable=False)
    role = Column(Enum(*ROLE_VALUES, name="user_role_enum"), nullable=False)
    granted_by = Column(String(128), nullable=True)
    granted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    # NULL for granted roles; at most one row may carry it
    bootstrap = Column(Boolean, nullable=True, unique=True, comment="Self-claimed first admin")


# ---------------------------------------------------------------------------
# Audit log – append-only record of privileged access
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="Principal id or trusted-backend")
    action = Column(String(64), nullable=False, comment="e.g. PATIENT_VIEW, INTAKE_FORM_UPDATE")
    table_name = Column(String(64), nullable=False)
    record_id = Column(String(64), nullable=True)
    old_values = Column(JSONType, nullable=True)
    new_values = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_logs_created_at", "created_at"),)


# ---------------------------------------------------------------------------
# Notification failure log (email_logs) – document/email follow-up failures
# ---------------------------------------------------------------------------
class NotificationFailure(Base):
    __tablename__ = "email_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    intake_form_id = Column(
        Uuid, ForeignKey("intake_forms.id", ondelete="CASCADE"), nullable=False
    )
    stage = Column(Enum(*FAILURE_STAGES, name="failure_stage_enum"), nullable=False)
    error_message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    intake_form = relationship("IntakeForm", back_populates="failures")

    __table_args__ = (
        Index("ix_email_logs_intake_form_id", "intake_form_id"),
        Index("ix_email_logs_created_at", "created_at"),
    )


# ---------------------------------------------------------------------------
# Intake session – resumable, non-PHI draft that expires
# ---------------------------------------------------------------------------
class IntakeSession(Base):
    __tablename__ = "intake_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    token_secret = Column(String(128), unique=True, nullable=False)
    patient_name = Column(Text, nullable=False)
    patient_phone = Column(String(32), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_intake_sessions_expires_at", "expires_at"),)

    @property
    def resume_token(self) -> str:
        return f"{self.id}.{self.token_secret}"


# ---------------------------------------------------------------------------
# Intake milestone – optional telemetry (e.g. telehealth hand-off)
# ---------------------------------------------------------------------------
class IntakeMilestone(Base):
    __tablename__ = "intake_milestones"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    kind = Column(Enum(*MILESTONE_KINDS, name="milestone_kind_enum"), nullable=False)
    occurred_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    patient = relationship("Patient", back_populates="milestones")


# ---------------------------------------------------------------------------
# Follow-up job – document generation / staff notification queue
# ---------------------------------------------------------------------------
class FollowUpJob(Base):
    __tablename__ = "followup_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    intake_form_id = Column(
        Uuid, ForeignKey("intake_forms.id", ondelete="CASCADE"), nullable=False
    )
    kind = Column(Enum(*JOB_KINDS, name="job_kind_enum"), nullable=False)
    status = Column(
        Enum(*JOB_STATUSES, name="job_status_enum"), default="pending", nullable=False
    )
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    form_signed_at = Column(
        DateTime(timezone=True), nullable=False, comment="signed_at of the answers this job covers"
    )
    # lease expiry while running, recovery deadline while pending
    next_attempt_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    intake_form = relationship("IntakeForm", back_populates="jobs")

    __table_args__ = (Index("ix_followup_jobs_due", "status", "next_attempt_at"),)
