"""Tests for the staff notification email."""

import json
from datetime import datetime, timezone

import httpx

from clinic_intake.schemas.intake_answers import IntakeAnswers
from clinic_intake.services.notifications import EmailAttachment, Mailer, build_notification


def _mailer(handler, api_key="re_test"):
    return Mailer(
        api_key=api_key,
        api_url="https://email.test/emails",
        sender="noreply@clinic.test",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def test_send_posts_message_with_attachment():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "msg_123"})

    result = _mailer(handler).send(
        "staff@clinic.test",
        "Subject",
        "<p>Body</p>",
        EmailAttachment(filename="consent.pdf", content=b"%PDF-1.4"),
    )

    assert result.ok
    assert result.message_id == "msg_123"
    assert seen["auth"] == "Bearer re_test"
    assert seen["payload"]["to"] == ["staff@clinic.test"]
    assert seen["payload"]["attachments"][0]["filename"] == "consent.pdf"


def test_missing_api_key_is_a_failure_not_an_exception():
    def handler(request):
        raise AssertionError("no request expected")

    result = _mailer(handler, api_key="").send("staff@clinic.test", "S", "B")
    assert not result.ok
    assert "missing API key" in result.error


def test_provider_rejection_is_reported():
    result = _mailer(lambda request: httpx.Response(422, text="invalid from")).send(
        "staff@clinic.test", "S", "B"
    )
    assert not result.ok
    assert "422" in result.error


def test_timeout_is_reported():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    result = _mailer(handler).send("staff@clinic.test", "S", "B")
    assert not result.ok
    assert "timed out" in result.error


def test_build_notification(answers):
    parsed = IntakeAnswers.model_validate(answers(insurance_assignment_consent=False))
    subject, body = build_notification(
        "Jane <Doe>",
        "555-0100",
        parsed,
        datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc),
        None,
    )
    assert subject == "New Patient Intake Form - Jane <Doe>"
    assert "Jane &lt;Doe&gt;" in body
    assert "Insurance Assignment Consent: No" in body
    assert "New Patient Consent: Yes" in body
    assert "pending" in body
