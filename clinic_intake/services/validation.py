"""
JSON Schema validation service.

Collects all errors rather than failing on the first one, and reports each
against the field it concerns so the intake form can highlight it.
"""

from typing import Any

import jsonschema


def _field_for(error: jsonschema.ValidationError) -> str:
    path = [str(part) for part in error.absolute_path]
    if error.validator == "required":
        # one error per missing property; the property is named in the message
        missing = [p for p in error.validator_value if repr(p) in error.message]
        if missing:
            path.append(missing[0])
    return ".".join(path) or "$"


def validate_against_schema(data: Any, schema: dict[str, Any]) -> list[dict[str, str]]:
    """
    Validate a document against a JSON schema.
    Returns a list of ``{"field", "message"}`` dicts (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    errors = [
        {"field": _field_for(error), "message": error.message}
        for error in validator.iter_errors(data)
    ]
    return sorted(errors, key=lambda e: (e["field"], e["message"]))
