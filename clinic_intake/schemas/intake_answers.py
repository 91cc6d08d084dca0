"""
Versioned intake answer documents.

The visitor's answers travel as a JSON document validated against the schema
for its ``schema_version`` at the submission boundary, then loaded into a
typed model for rendering and notifications. New optional fields can be added
to a new schema version without touching stored v1 documents.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

CURRENT_SCHEMA_VERSION = 1

CONSENT_FIELDS = (
    "new_patient_consent",
    "insurance_assignment_consent",
    "emergency_medical_consent",
)

_TEXT = {"type": "string", "minLength": 1, "maxLength": 500}
_OPTIONAL_TEXT = {"type": ["string", "null"], "maxLength": 500}
_DATE = {"type": "string", "pattern": "^\\d{4}-\\d{2}-\\d{2}$"}

INTAKE_ANSWERS_SCHEMA_V1: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Intake answers v1",
    "description": "Demographics, accident/insurance details and three consent decisions.",
    "type": "object",
    "required": [
        "schema_version",
        "patient_name",
        "date_of_birth",
        "address",
        *CONSENT_FIELDS,
    ],
    "properties": {
        "schema_version": {"const": 1},
        "patient_name": {**_TEXT, "description": "Name as written on the consent forms."},
        "date_of_birth": {**_DATE, "description": "ISO 8601 date (YYYY-MM-DD)."},
        "address": _TEXT,
        "city": _OPTIONAL_TEXT,
        "zip_code": {"type": ["string", "null"], "pattern": "^\\d{5}(-\\d{4})?$"},
        "accident_date": {"anyOf": [_DATE, {"type": "null"}]},
        "insurance_provider": _OPTIONAL_TEXT,
        "policy_number": _OPTIONAL_TEXT,
        "emergency_contact_name": _OPTIONAL_TEXT,
        "emergency_contact_phone": _OPTIONAL_TEXT,
        "new_patient_consent": {
            "type": "boolean",
            "description": "General treatment and medical records consent.",
        },
        "insurance_assignment_consent": {
            "type": "boolean",
            "description": "Assignment of insurance benefits to the clinic.",
        },
        "emergency_medical_consent": {
            "type": "boolean",
            "description": "Emergency medical condition acknowledgment.",
        },
    },
    "additionalProperties": False,
}

ANSWER_SCHEMAS: dict[int, dict] = {1: INTAKE_ANSWERS_SCHEMA_V1}


class IntakeAnswers(BaseModel):
    """Typed view of a validated v1 answer document."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    schema_version: int = CURRENT_SCHEMA_VERSION
    patient_name: str
    date_of_birth: str
    address: str
    city: str | None = None
    zip_code: str | None = None
    accident_date: str | None = None
    insurance_provider: str | None = None
    policy_number: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    new_patient_consent: bool
    insurance_assignment_consent: bool
    emergency_medical_consent: bool
    signature: str | None = None

    @property
    def full_address(self) -> str:
        return ", ".join(part for part in (self.address, self.city, self.zip_code) if part)
