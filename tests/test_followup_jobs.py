"""Tests for the follow-up job queue: document generation and staff email."""

from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select, update

from clinic_intake.jobs.followup import due_job_ids, request_regeneration, run_job
from clinic_intake.models.intake import FollowUpJob, IntakeForm, NotificationFailure, utcnow
from clinic_intake.services import intake
from clinic_intake.services.errors import AuthorizationDenied, RecordNotFound
from clinic_intake.services.notifications import Mailer
from clinic_intake.services.policy import ANONYMOUS, principal_for

STAFF = principal_for("u-staff", "receptionist")


def _working_mailer(sent):
    def handler(request):
        sent.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    return Mailer(api_key="re_test", transport=httpx.MockTransport(handler))


def _unconfigured_mailer():
    return Mailer(api_key="")


@pytest.fixture
def submitted(db, answers, signature):
    patient_id = intake.create_patient(db, ANONYMOUS, "Jane Doe", "555-0100")
    return intake.submit_intake_form(db, patient_id, answers(), signature)


def _mark_running(db, job_id, lease_until):
    db.execute(
        update(FollowUpJob)
        .where(FollowUpJob.id == job_id)
        .values(status="running", attempts=1, next_attempt_at=lease_until)
    )
    db.commit()


def _failures(db, intake_form_id):
    return db.scalars(
        select(NotificationFailure).where(NotificationFailure.intake_form_id == intake_form_id)
    ).all()


def test_successful_followup(db, store, submitted):
    sent = []
    assert run_job(submitted.job_id, store=store, mailer=_working_mailer(sent)) == "succeeded"

    db.expire_all()
    form = db.get(IntakeForm, submitted.intake_form_id)
    assert form.document_path is not None
    assert form.email_sent is True
    assert len(sent) == 1
    assert b"consent.pdf" in sent[0].content
    assert _failures(db, form.id) == []


def test_email_failure_is_logged_once_and_form_stays_locked(db, store, submitted):
    now = utcnow()
    status = run_job(submitted.job_id, store=store, mailer=_unconfigured_mailer(), now=now)
    assert status == "pending"

    db.expire_all()
    form = db.get(IntakeForm, submitted.intake_form_id)
    assert form.is_locked
    assert form.document_path is not None
    assert form.email_sent is False

    failures = _failures(db, form.id)
    assert len(failures) == 1
    assert failures[0].stage == "email"
    assert "missing API key" in failures[0].error_message

    job = db.get(FollowUpJob, submitted.job_id)
    assert job.attempts == 1
    assert job.next_attempt_at.replace(tzinfo=None) == (now + timedelta(seconds=300)).replace(
        tzinfo=None
    )


def test_running_job_is_not_reclaimed_while_leased(db, store, submitted):
    now = utcnow()
    _mark_running(db, submitted.job_id, lease_until=now + timedelta(seconds=300))
    assert run_job(submitted.job_id, store=store, mailer=_unconfigured_mailer(), now=now) is None

    sent = []
    later = now + timedelta(seconds=301)
    assert run_job(submitted.job_id, store=store, mailer=_working_mailer(sent), now=later) == (
        "succeeded"
    )
    assert len(sent) == 1


def test_finished_job_is_not_rerun(store, submitted):
    sent = []
    assert run_job(submitted.job_id, store=store, mailer=_working_mailer(sent)) == "succeeded"
    assert run_job(submitted.job_id, store=store, mailer=_working_mailer(sent)) is None
    assert len(sent) == 1


def test_job_fails_after_max_attempts(db, store, submitted):
    now = utcnow()
    mailer = _unconfigured_mailer()
    assert run_job(submitted.job_id, store=store, mailer=mailer, now=now) == "pending"
    assert run_job(submitted.job_id, store=store, mailer=mailer, now=now) == "pending"
    assert run_job(submitted.job_id, store=store, mailer=mailer, now=now) == "failed"

    db.expire_all()
    assert len(_failures(db, submitted.intake_form_id)) == 3
    job = db.get(FollowUpJob, submitted.job_id)
    assert job.status == "failed"
    assert "missing API key" in job.last_error


def test_retry_skips_work_already_done(db, store, submitted):
    now = utcnow()
    run_job(submitted.job_id, store=store, mailer=_unconfigured_mailer(), now=now)

    sent = []
    status = run_job(
        submitted.job_id, store=store, mailer=_working_mailer(sent), now=now + timedelta(minutes=2)
    )
    assert status == "succeeded"
    assert len(sent) == 1
    assert len(_failures(db, submitted.intake_form_id)) == 1


def test_due_jobs_are_those_past_their_deadline(db, store, submitted):
    now = utcnow()
    assert due_job_ids(db, now) == []
    assert due_job_ids(db, now + timedelta(seconds=301)) == [submitted.job_id]

    sent = []
    run_job(submitted.job_id, store=store, mailer=_working_mailer(sent), now=now)
    assert due_job_ids(db, now + timedelta(days=1)) == []


def test_stale_running_job_is_superseded_by_resubmission(db, store, answers, signature,
                                                         submitted):
    now = utcnow()
    # worker died while running the first job
    _mark_running(db, submitted.job_id, lease_until=now - timedelta(seconds=1))
    form = db.get(IntakeForm, submitted.intake_form_id)
    resubmitted = intake.submit_intake_form(
        db, form.patient_id, answers(policy_number="P-2002"), signature
    )

    sent = []
    status = run_job(submitted.job_id, store=store, mailer=_working_mailer(sent), now=now)
    assert status == "failed"
    assert sent == []
    db.expire_all()
    stale = db.get(FollowUpJob, submitted.job_id)
    assert stale.last_error == "Superseded by resubmission"
    form = db.get(IntakeForm, submitted.intake_form_id)
    assert form.document_path is None
    assert form.email_sent is False

    assert run_job(resubmitted.job_id, store=store, mailer=_working_mailer(sent)) == "succeeded"
    assert len(sent) == 1
    db.expire_all()
    form = db.get(IntakeForm, submitted.intake_form_id)
    assert form.document_path is not None
    assert form.email_sent is True
    assert intake.open_answers(form).policy_number == "P-2002"


def test_staff_regeneration(db, store, submitted):
    with pytest.raises(AuthorizationDenied):
        request_regeneration(db, ANONYMOUS, submitted.intake_form_id)

    job = request_regeneration(db, STAFF, submitted.intake_form_id)
    assert job.kind == "regenerate_document"

    sent = []
    assert run_job(job.id, store=store, mailer=_working_mailer(sent)) == "succeeded"
    assert sent == []

    db.expire_all()
    assert db.get(IntakeForm, submitted.intake_form_id).document_path is not None


def test_regeneration_of_missing_form(db):
    with pytest.raises(RecordNotFound):
        request_regeneration(db, STAFF, uuid4())
