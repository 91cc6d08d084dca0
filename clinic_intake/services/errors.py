"""
Intake workflow exceptions.

Every error carries a stable ``error_code`` and optional ``details`` so the
API layer can map it to a response without inspecting messages.
"""

from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base exception for the intake service."""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "INTAKE_ERROR"
        self.details = details or {}


class AuthorizationDenied(IntakeError):
    """Principal may not perform the operation.

    The message is fixed: it must never reveal whether the target exists.
    """

    status_code = 403

    def __init__(self) -> None:
        super().__init__("Not authorized", error_code="NOT_AUTHORIZED")


class AuthenticationFailed(IntakeError):
    """A bearer token was presented but could not be verified."""

    status_code = 401

    def __init__(self, reason: str = "Invalid credentials"):
        super().__init__(reason, error_code="AUTHENTICATION_FAILED")


class ValidationFailed(IntakeError):
    """Submission is malformed or incomplete; nothing was persisted."""

    status_code = 422

    def __init__(self, errors: list[dict[str, str]]):
        super().__init__(
            "Submission failed validation",
            error_code="VALIDATION_FAILED",
            details={"errors": errors},
        )
        self.errors = errors


class PersistenceFailure(IntakeError):
    """Data-store write failed and was rolled back. Safe to retry."""

    status_code = 503

    def __init__(self, message: str = "Could not save your information, please try again"):
        super().__init__(message, error_code="PERSISTENCE_FAILURE", details={"retryable": True})


class DownstreamFailure(IntakeError):
    """Document generation or notification failed. Never shown to the visitor."""

    def __init__(self, stage: str, message: str):
        super().__init__(message, error_code="DOWNSTREAM_FAILURE", details={"stage": stage})
        self.stage = stage


class ExpiredOrInvalidSession(IntakeError):
    """Draft session token no longer resolves; the visitor restarts intake."""

    status_code = 410

    def __init__(self) -> None:
        super().__init__(
            "This intake link has expired, please start again",
            error_code="SESSION_EXPIRED",
        )


class RoleConflict(IntakeError):
    """Principal already holds a role."""

    status_code = 409

    def __init__(self, principal_id: str, existing_role: str):
        super().__init__(
            f"Principal already has role '{existing_role}'",
            error_code="ROLE_CONFLICT",
            details={"principal_id": principal_id, "existing_role": existing_role},
        )


class RecordNotFound(IntakeError):
    """Raised only on staff paths, after authorization has succeeded."""

    status_code = 404

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", error_code="NOT_FOUND")
