"""Tests for patient creation, intake submission and the staff-side lifecycle."""

import base64
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from clinic_intake.models import database
from clinic_intake.models.intake import AuditLog, FollowUpJob, IntakeForm, Patient
from clinic_intake.services import intake
from clinic_intake.services.encryption import get_encryption_service
from clinic_intake.services.errors import (
    AuthorizationDenied,
    RecordNotFound,
    ValidationFailed,
)
from clinic_intake.services.policy import ANONYMOUS, principal_for

STAFF = principal_for("u-staff", "medical_staff")
ADMIN = principal_for("u-admin", "admin")


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def _patient(db, name="Jane Doe", phone="555-0100"):
    return intake.create_patient(db, ANONYMOUS, name, phone)


def test_create_patient_returns_id_only(db):
    patient_id = _patient(db)
    patient = db.get(Patient, patient_id)
    assert patient.name == "Jane Doe"
    assert patient.phone == "555-0100"


def test_create_patient_requires_name(db):
    with pytest.raises(ValidationFailed):
        intake.create_patient(db, ANONYMOUS, "   ", None)
    assert _count(db, Patient) == 0


def test_submit_locks_form_and_queues_followup(db, answers, signature):
    patient_id = _patient(db)
    result = intake.submit_intake_form(db, patient_id, answers(), signature)

    form = db.get(IntakeForm, result.intake_form_id)
    assert form.is_locked
    assert form.document_path is None
    assert form.email_sent is False
    assert "Jane Doe" not in form.encrypted_form_data

    job = db.get(FollowUpJob, result.job_id)
    assert job.kind == "intake_followup"
    assert job.status == "pending"

    opened = intake.open_answers(form)
    assert opened.patient_name == "Jane Doe"
    assert opened.signature == signature

    actions = db.scalars(select(AuditLog.action)).all()
    assert "INTAKE_FORM_SUBMIT" in actions


def test_resubmission_keeps_one_form_and_refreshes_signed_at(db, answers, signature):
    patient_id = _patient(db)
    first = intake.submit_intake_form(
        db, patient_id, answers(), signature, signed_at=datetime(2026, 1, 1, tzinfo=timezone.utc)
    )
    second = intake.submit_intake_form(
        db,
        patient_id,
        answers(insurance_assignment_consent=False),
        signature,
        signed_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
    )

    assert first.intake_form_id == second.intake_form_id
    assert _count(db, IntakeForm) == 1

    db.expire_all()
    form = db.get(IntakeForm, second.intake_form_id)
    assert form.signed_at.replace(tzinfo=None) == datetime(2026, 1, 2)
    assert intake.open_answers(form).insurance_assignment_consent is False

    superseded = db.get(FollowUpJob, first.job_id)
    assert superseded.status == "failed"
    assert db.get(FollowUpJob, second.job_id).status == "pending"


def test_invalid_submission_persists_nothing(db, answers, signature):
    patient_id = _patient(db)
    bad = answers(date_of_birth="01/15/1990")
    del bad["emergency_medical_consent"]

    with pytest.raises(ValidationFailed) as exc_info:
        intake.submit_intake_form(db, patient_id, bad, signature)

    fields = {error["field"] for error in exc_info.value.errors}
    assert {"date_of_birth", "emergency_medical_consent"} <= fields
    assert _count(db, IntakeForm) == 0
    assert _count(db, FollowUpJob) == 0


def test_corrupt_signature_image_persists_nothing(db, answers):
    patient_id = _patient(db)
    corrupt = "data:image/png;base64," + base64.b64encode(
        b"\x89PNG\r\n\x1a\n" + b"garbage" * 20
    ).decode()

    with pytest.raises(ValidationFailed) as exc_info:
        intake.submit_intake_form(db, patient_id, answers(), corrupt)

    assert exc_info.value.errors == [
        {"field": "signature", "message": "Signature image could not be read"}
    ]
    assert _count(db, IntakeForm) == 0
    assert _count(db, FollowUpJob) == 0


def test_submit_overwrites_a_form_written_by_another_session(db, answers, signature):
    patient_id = _patient(db)
    other = database.SessionLocal()
    try:
        existing = IntakeForm(
            patient_id=patient_id,
            encrypted_form_data=get_encryption_service().seal_document(answers()),
            signed_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        other.add(existing)
        other.commit()
        existing_id = existing.id
    finally:
        other.close()

    result = intake.submit_intake_form(db, patient_id, answers(policy_number="P-2002"), signature)

    assert result.intake_form_id == existing_id
    assert _count(db, IntakeForm) == 1
    form = db.get(IntakeForm, existing_id)
    assert intake.open_answers(form).policy_number == "P-2002"
    assert form.document_path is None


def test_second_form_for_a_patient_violates_the_unique_constraint(db, answers):
    patient_id = _patient(db)
    sealed = get_encryption_service().seal_document(answers())
    db.add(IntakeForm(patient_id=patient_id, encrypted_form_data=sealed))
    db.commit()

    db.add(IntakeForm(patient_id=patient_id, encrypted_form_data=sealed))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
    assert _count(db, IntakeForm) == 1


def test_missing_signature_is_a_validation_error(db, answers):
    patient_id = _patient(db)
    with pytest.raises(ValidationFailed) as exc_info:
        intake.submit_intake_form(db, patient_id, answers(), None)
    assert exc_info.value.errors == [{"field": "signature", "message": "Signature is required"}]


def test_unsupported_schema_version(db, answers, signature):
    patient_id = _patient(db)
    with pytest.raises(ValidationFailed) as exc_info:
        intake.submit_intake_form(db, patient_id, answers(schema_version=7), signature)
    assert exc_info.value.errors[0]["field"] == "schema_version"


def test_submit_for_unknown_patient_is_denied(db, answers, signature):
    with pytest.raises(AuthorizationDenied):
        intake.submit_intake_form(db, uuid4(), answers(), signature)
    assert _count(db, IntakeForm) == 0


def test_declined_consents_are_still_accepted(db, answers, signature):
    patient_id = _patient(db)
    result = intake.submit_intake_form(
        db, patient_id, answers(new_patient_consent=False), signature
    )
    form = db.get(IntakeForm, result.intake_form_id)
    assert intake.open_answers(form).new_patient_consent is False


def test_staff_views_are_audited(db, answers, signature):
    patient_id = _patient(db)
    result = intake.submit_intake_form(db, patient_id, answers(), signature)

    forms, total = intake.list_intake_forms(db, STAFF)
    assert total == 1
    assert forms[0].id == result.intake_form_id

    intake.get_intake_form(db, STAFF, result.intake_form_id)
    views = db.scalars(
        select(AuditLog).where(AuditLog.action == "INTAKE_FORM_VIEW", AuditLog.actor == "u-staff")
    ).all()
    assert len(views) == 2
    assert all(entry.old_values is None and entry.new_values is None for entry in views)


def test_list_filters_by_search_and_status(db, answers, signature):
    jane = _patient(db, "Jane Doe", "555-0100")
    john = _patient(db, "John Roe", "555-0199")
    intake.submit_intake_form(db, jane, answers(), signature)
    intake.submit_intake_form(db, john, answers(patient_name="John Roe"), signature)

    forms, total = intake.list_intake_forms(db, STAFF, search="roe")
    assert total == 1
    assert forms[0].patient.name == "John Roe"

    _, pending = intake.list_intake_forms(db, STAFF, status="document_pending")
    _, generated = intake.list_intake_forms(db, STAFF, status="document_generated")
    assert (pending, generated) == (2, 0)


def test_update_intake_form_records_before_and_after(db, answers, signature):
    patient_id = _patient(db)
    result = intake.submit_intake_form(db, patient_id, answers(), signature)

    form = intake.update_intake_form(db, STAFF, result.intake_form_id, fax_sent=True)
    assert form.fax_sent is True

    entry = db.scalar(select(AuditLog).where(AuditLog.action == "INTAKE_FORM_UPDATE"))
    assert entry.old_values["fax_sent"] is False
    assert entry.new_values["fax_sent"] is True


def test_delete_requires_admin(db, answers, signature):
    patient_id = _patient(db)
    intake.submit_intake_form(db, patient_id, answers(), signature)

    with pytest.raises(AuthorizationDenied):
        intake.delete_patient(db, STAFF, patient_id)

    intake.delete_patient(db, ADMIN, patient_id)
    assert _count(db, Patient) == 0
    assert _count(db, IntakeForm) == 0
    assert _count(db, FollowUpJob) == 0


def test_staff_lookup_of_missing_record(db):
    with pytest.raises(RecordNotFound):
        intake.get_patient(db, STAFF, uuid4())


def test_anonymous_cannot_read_existing_or_missing_patient(db):
    patient_id = _patient(db)
    for target in (patient_id, uuid4()):
        with pytest.raises(AuthorizationDenied):
            intake.get_patient(db, ANONYMOUS, target)


def test_track_milestone(db):
    patient_id = _patient(db)
    intake.track_milestone(db, patient_id, "telehealth_redirect")
    assert len(db.get(Patient, patient_id).milestones) == 1

    with pytest.raises(ValidationFailed):
        intake.track_milestone(db, patient_id, "page_view")
    with pytest.raises(AuthorizationDenied):
        intake.track_milestone(db, uuid4(), "telehealth_redirect")


def test_dashboard_stats(db, answers, signature):
    first = _patient(db)
    _patient(db, "Second Visitor")
    intake.submit_intake_form(db, first, answers(), signature)

    stats = intake.dashboard_stats(db, STAFF)
    assert stats == {
        "total_patients": 2,
        "completed_forms": 1,
        "pending_forms": 1,
        "generated_documents": 0,
    }
