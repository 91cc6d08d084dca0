"""
Consent document rendering.

The document is a pure function of the locked answers: three fixed consent
sections with the patient's name and key fields interpolated, each marked
agreed or not agreed, and the drawn signature under every agreed section.
Sections are kept together, so a section that does not fit the remaining
space on a page starts on the next one instead of being cut.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, KeepTogether, Paragraph, SimpleDocTemplate, Spacer, Table
from reportlab.platypus.doctemplate import LayoutError
from sqlalchemy import update
from sqlalchemy.orm import Session

from clinic_intake.models.intake import IntakeForm, utcnow
from clinic_intake.schemas.intake_answers import IntakeAnswers
from clinic_intake.services.encryption import get_encryption_service
from clinic_intake.services.errors import DownstreamFailure
from clinic_intake.services.policy import (
    TRUSTED_BACKEND,
    Operation,
    ResourceKind,
    require,
)
from clinic_intake.services.storage import DocumentStore

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "data:image/png;base64,"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
NOT_PROVIDED = "N/A"


def decode_signature(data_url: str) -> bytes:
    """Decode a ``data:image/png;base64,...`` URL into PNG bytes that open as an image."""
    if not data_url or not data_url.startswith(SIGNATURE_PREFIX):
        raise ValueError("Signature must be a PNG data URL")
    try:
        raw = base64.b64decode(data_url[len(SIGNATURE_PREFIX):], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Signature is not valid base64") from exc
    if not raw.startswith(PNG_MAGIC):
        raise ValueError("Signature is not a PNG image")
    try:
        ImageReader(io.BytesIO(raw)).getRGBData()
    except (OSError, ValueError, SyntaxError) as exc:
        raise ValueError("Signature image could not be read") from exc
    return raw


@dataclass(frozen=True)
class ConsentSection:
    key: str
    title: str
    paragraphs: tuple[str, ...]
    agreed: bool
    fields: tuple[tuple[str, str], ...] = field(default_factory=tuple)


def _value(value: str | None) -> str:
    return value if value else NOT_PROVIDED


def build_consent_sections(patient_name: str, answers: IntakeAnswers) -> list[ConsentSection]:
    """Fixed statutory text with the visitor's answers interpolated."""
    name = answers.patient_name or patient_name
    return [
        ConsentSection(
            key="new_patient_consent",
            title="Consent to Treatment and Release of Medical Records",
            paragraphs=(
                f"I, {name}, voluntarily consent to examination and treatment by the "
                "physicians and staff of this clinic, including diagnostic procedures, "
                "physical therapy and other services they consider necessary.",
                "I authorize the clinic to obtain my medical records from prior providers "
                "and to release records of my care to my insurer, my attorney and other "
                "treating providers as needed to coordinate treatment and payment.",
                "I understand that no guarantee has been made as to the results of "
                "treatment and that I may withdraw this consent in writing at any time.",
            ),
            agreed=answers.new_patient_consent,
            fields=(
                ("Date of Birth", _value(answers.date_of_birth)),
                ("Address", _value(answers.full_address)),
            ),
        ),
        ConsentSection(
            key="insurance_assignment_consent",
            title="Assignment of Insurance Benefits",
            paragraphs=(
                f"I, {name}, assign to this clinic all rights and benefits payable for "
                "services rendered under any applicable personal injury protection, medical "
                "payments or health insurance policy, and direct my insurer to pay the clinic "
                "directly.",
                "I understand that I remain responsible for any deductible, co-payment or "
                "charges not covered by my insurer, and that a copy of this assignment is as "
                "valid as the original.",
            ),
            agreed=answers.insurance_assignment_consent,
            fields=(
                ("Insurance Provider", _value(answers.insurance_provider)),
                ("Policy Number", _value(answers.policy_number)),
                ("Accident Date", _value(answers.accident_date)),
            ),
        ),
        ConsentSection(
            key="emergency_medical_consent",
            title="Emergency Medical Condition Acknowledgment",
            paragraphs=(
                f"I, {name}, acknowledge that the treating provider will determine whether "
                "I have an emergency medical condition, meaning a condition with acute "
                "symptoms of sufficient severity that the absence of immediate medical "
                "attention could reasonably result in serious jeopardy to my health, serious "
                "impairment of bodily functions or serious dysfunction of a body part.",
                "I understand this determination may affect the benefits available under my "
                "policy, and I agree to attend scheduled follow-up evaluations.",
            ),
            agreed=answers.emergency_medical_consent,
            fields=(
                ("Emergency Contact", _value(answers.emergency_contact_name)),
                ("Emergency Contact Phone", _value(answers.emergency_contact_phone)),
            ),
        ),
    ]


def _styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("IntakeTitle", parent=base["Title"], fontSize=16),
        "heading": ParagraphStyle("IntakeHeading", parent=base["Heading2"], spaceBefore=12),
        "body": ParagraphStyle("IntakeBody", parent=base["BodyText"], leading=14),
        "status": ParagraphStyle("IntakeStatus", parent=base["BodyText"], fontName="Helvetica-Bold"),
    }


def _section_flowables(section: ConsentSection, signature_png: bytes | None,
                       signed_on: str, styles: dict[str, ParagraphStyle]) -> list:
    flowables = [Paragraph(escape(section.title), styles["heading"])]
    flowables.extend(Paragraph(escape(text), styles["body"]) for text in section.paragraphs)
    if section.fields:
        flowables.append(Spacer(1, 0.08 * inch))
        flowables.append(
            Table([[label + ":", value] for label, value in section.fields],
                  colWidths=[1.9 * inch, 4.6 * inch], hAlign="LEFT")
        )
    flowables.append(Spacer(1, 0.1 * inch))
    if section.agreed:
        flowables.append(Paragraph("Status: AGREED", styles["status"]))
        if signature_png:
            flowables.append(Paragraph("Patient signature:", styles["body"]))
            flowables.append(
                Image(io.BytesIO(signature_png), width=2.5 * inch, height=0.9 * inch,
                      kind="proportional", hAlign="LEFT")
            )
        flowables.append(Paragraph(f"Signed: {escape(signed_on)}", styles["body"]))
    else:
        flowables.append(Paragraph("Status: NOT AGREED", styles["status"]))
    return flowables


def render_consent_document(
    patient_name: str,
    patient_phone: str | None,
    answers: IntakeAnswers,
    signed_at: datetime | None,
) -> bytes:
    """Render the consent PDF. Identical inputs give byte-identical output."""
    styles = _styles()
    signature_png = decode_signature(answers.signature) if answers.signature else None
    signed_on = signed_at.strftime("%Y-%m-%d %H:%M UTC") if signed_at else NOT_PROVIDED

    story = [
        Paragraph("Patient Intake Consent Forms", styles["title"]),
        Table(
            [
                ["Patient:", _value(patient_name)],
                ["Phone:", _value(patient_phone)],
                ["Date of Birth:", _value(answers.date_of_birth)],
                ["Address:", _value(answers.full_address)],
            ],
            colWidths=[1.9 * inch, 4.6 * inch],
            hAlign="LEFT",
        ),
        Spacer(1, 0.2 * inch),
    ]
    for section in build_consent_sections(patient_name, answers):
        story.append(KeepTogether(_section_flowables(section, signature_png, signed_on, styles)))

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        title="Patient Intake Consent Forms",
        invariant=1,  # fixed creation date and document id
    )
    doc.build(story)
    return buffer.getvalue()


def document_path_for(intake_form_id: UUID) -> str:
    return f"{intake_form_id}/{intake_form_id}_consent.pdf"


def _short_reason(exc: Exception) -> str:
    """Exception class plus its first readable line, for the staff failure log."""
    lines = [
        line.strip()
        for line in str(exc).splitlines()
        if line.strip() and not line.strip().startswith("fileName=")
    ]
    reason = type(exc).__name__
    if lines:
        reason = f"{reason}: {lines[0]}"
    return reason[:200]


def generate_document(
    db: Session,
    intake_form_id: UUID,
    store: DocumentStore,
    signed_at: datetime | None = None,
) -> str:
    """
    Render the locked form, overwrite it in private storage and attach the
    reference to the form. Safe to re-run.

    With ``signed_at`` the reference is only attached while the form still
    carries the answers signed at that time.
    """
    require(TRUSTED_BACKEND, Operation.UPDATE, ResourceKind.INTAKE_FORM)
    require(TRUSTED_BACKEND, Operation.CREATE, ResourceKind.STORED_DOCUMENT)

    form = db.get(IntakeForm, intake_form_id)
    if form is None or not form.is_locked:
        raise DownstreamFailure("document", f"Intake form {intake_form_id} is not submitted")

    try:
        answers = IntakeAnswers.model_validate(
            get_encryption_service().open_document(form.encrypted_form_data)
        )
        pdf_bytes = render_consent_document(
            form.patient.name, form.patient.phone, answers, form.signed_at
        )
    except (ValueError, OSError, LayoutError) as exc:
        logger.warning("Rendering intake form %s failed: %r", form.id, exc)
        message = f"Document rendering failed: {_short_reason(exc)}"
        raise DownstreamFailure("document", message) from exc

    path = store.put(document_path_for(form.id), pdf_bytes)
    attached = db.execute(
        update(IntakeForm)
        .where(
            IntakeForm.id == form.id,
            IntakeForm.signed_at == (form.signed_at if signed_at is None else signed_at),
        )
        .values(document_path=path, document_generated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.refresh(form)
    if attached.rowcount != 1:
        raise DownstreamFailure("document", "Intake form was resubmitted while rendering")
    logger.info("Generated consent document for intake form %s", form.id)
    return path
