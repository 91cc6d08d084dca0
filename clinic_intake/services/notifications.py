"""
Staff notification email and the notification failure log.

Sending is best effort: ``Mailer.send`` reports failure in its result and
never raises, so a broken provider can not fail an already locked intake.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_intake.config import settings
from clinic_intake.models.intake import NotificationFailure
from clinic_intake.schemas.intake_answers import IntakeAnswers
from clinic_intake.services.policy import (
    TRUSTED_BACKEND,
    Operation,
    Principal,
    ResourceKind,
    require,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes


@dataclass(frozen=True)
class EmailResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


class Mailer:
    """Resend HTTP API client."""

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        sender: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = settings.RESEND_API_KEY if api_key is None else api_key
        self.api_url = api_url or settings.RESEND_API_URL
        self.sender = sender or settings.EMAIL_FROM
        self.timeout = min(timeout or settings.EXTERNAL_CALL_TIMEOUT_SECONDS, 30.0)
        self._transport = transport

    def send(
        self,
        to_address: str,
        subject: str,
        body: str,
        attachment: EmailAttachment | None = None,
    ) -> EmailResult:
        if not self.api_key:
            return EmailResult(ok=False, error="Email provider is not configured (missing API key)")

        payload = {
            "from": self.sender,
            "to": [to_address],
            "subject": subject,
            "html": body,
        }
        if attachment is not None:
            payload["attachments"] = [
                {
                    "filename": attachment.filename,
                    "content": base64.b64encode(attachment.content).decode(),
                }
            ]

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                message_id = response.json().get("id")
        except httpx.TimeoutException:
            return EmailResult(ok=False, error=f"Email provider timed out after {self.timeout}s")
        except httpx.HTTPStatusError as exc:
            return EmailResult(
                ok=False,
                error=f"Email provider rejected message ({exc.response.status_code}): "
                f"{exc.response.text[:300]}",
            )
        except (httpx.HTTPError, ValueError) as exc:
            return EmailResult(ok=False, error=f"Email dispatch failed: {exc}")

        logger.info("Email %s accepted by provider", message_id)
        return EmailResult(ok=True, message_id=message_id)


def get_mailer() -> Mailer:
    return Mailer()


def build_notification(
    patient_name: str,
    patient_phone: str | None,
    answers: IntakeAnswers,
    submitted_at: datetime | None,
    document_url: str | None,
) -> tuple[str, str]:
    """Subject and HTML body for the staff notification."""

    def yes_no(value: bool) -> str:
        return "Yes" if value else "No"

    def text(value: str | None) -> str:
        return escape(value) if value else "N/A"

    if document_url:
        document_line = (
            "<p>The consent document is attached and stored in the system.</p>"
            f'<p><a href="{escape(document_url)}">View document</a></p>'
        )
    else:
        document_line = "<p>The consent document is pending and will be available in the dashboard.</p>"

    submitted = submitted_at.strftime("%Y-%m-%d %H:%M UTC") if submitted_at else None
    subject = f"New Patient Intake Form - {patient_name or 'Unknown Patient'}"
    body = (
        "<h2>New Patient Intake Form Submitted</h2>"
        f"<p><strong>Patient:</strong> {text(patient_name)}</p>"
        f"<p><strong>Phone:</strong> {text(patient_phone)}</p>"
        f"<p><strong>Date of Birth:</strong> {text(answers.date_of_birth)}</p>"
        f"<p><strong>Address:</strong> {text(answers.full_address)}</p>"
        f"<p><strong>Accident Date:</strong> {text(answers.accident_date)}</p>"
        f"<p><strong>Submitted:</strong> {text(submitted)}</p>"
        "<h3>Consents Provided:</h3><ul>"
        f"<li>New Patient Consent: {yes_no(answers.new_patient_consent)}</li>"
        f"<li>Insurance Assignment Consent: {yes_no(answers.insurance_assignment_consent)}</li>"
        f"<li>Emergency Medical Consent: {yes_no(answers.emergency_medical_consent)}</li>"
        "</ul>"
        f"{document_line}"
    )
    return subject, body


# ---------------------------------------------------------------------------
# Failure log
# ---------------------------------------------------------------------------

def record_failure(db: Session, intake_form_id: UUID, stage: str, message: str) -> NotificationFailure:
    """Append one failure entry for staff follow-up."""
    require(TRUSTED_BACKEND, Operation.CREATE, ResourceKind.NOTIFICATION_FAILURE)
    entry = NotificationFailure(intake_form_id=intake_form_id, stage=stage, error_message=message)
    db.add(entry)
    db.flush()
    logger.error("Follow-up %s failed for intake form %s: %s", stage, intake_form_id, message)
    return entry


def list_failures(db: Session, principal: Principal, intake_form_id: UUID) -> list[NotificationFailure]:
    require(principal, Operation.READ, ResourceKind.NOTIFICATION_FAILURE)
    return list(
        db.scalars(
            select(NotificationFailure)
            .where(NotificationFailure.intake_form_id == intake_form_id)
            .order_by(NotificationFailure.created_at)
        )
    )
