"""
Access policy engine.

A pure function of (principal snapshot, operation, resource kind, resource).
Rules are a permissive union: an operation is allowed when any rule for the
resource kind lists the operation and the principal's kind, and the rule's
predicate (if any) holds for the concrete resource. Everything else is denied.

The principal's role is resolved once per request (see ``api.deps``) and
passed in explicitly; nothing here touches the database.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from clinic_intake.services.errors import AuthorizationDenied

logger = logging.getLogger(__name__)


class PrincipalKind(str, Enum):
    ANONYMOUS = "anonymous"
    NO_ROLE = "authenticated-no-role"
    RECEPTIONIST = "receptionist"
    MEDICAL_STAFF = "medical_staff"
    ADMIN = "admin"
    TRUSTED_BACKEND = "trusted-backend"


class Operation(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class ResourceKind(str, Enum):
    PATIENT = "patient"
    INTAKE_FORM = "intake_form"
    STORED_DOCUMENT = "stored_document"
    AUDIT_LOG = "audit_log"
    ROLE_ASSIGNMENT = "role_assignment"
    NOTIFICATION_FAILURE = "notification_failure"
    INTAKE_SESSION = "intake_session"
    INTAKE_MILESTONE = "intake_milestone"


ROLE_KINDS = {
    "admin": PrincipalKind.ADMIN,
    "medical_staff": PrincipalKind.MEDICAL_STAFF,
    "receptionist": PrincipalKind.RECEPTIONIST,
}

STAFF = frozenset(
    {PrincipalKind.RECEPTIONIST, PrincipalKind.MEDICAL_STAFF, PrincipalKind.ADMIN}
)
AUTHENTICATED = STAFF | {PrincipalKind.NO_ROLE}


@dataclass(frozen=True)
class Principal:
    """Who is asking. ``id`` is None only for anonymous visitors."""

    id: str | None
    kind: PrincipalKind

    @property
    def is_authenticated(self) -> bool:
        return self.kind in AUTHENTICATED

    @property
    def role(self) -> str | None:
        return self.kind.value if self.kind in STAFF else None

    @property
    def audit_actor(self) -> str:
        return self.id or self.kind.value


ANONYMOUS = Principal(id=None, kind=PrincipalKind.ANONYMOUS)
# Only services construct work under this principal; no request maps to it.
TRUSTED_BACKEND = Principal(id="trusted-backend", kind=PrincipalKind.TRUSTED_BACKEND)


def principal_for(principal_id: str, role: str | None) -> Principal:
    """Build the per-request snapshot for an authenticated principal."""
    return Principal(id=principal_id, kind=ROLE_KINDS.get(role or "", PrincipalKind.NO_ROLE))


@dataclass(frozen=True)
class SessionTokenCheck:
    """Resource handed to the policy when a visitor presents a resume token."""

    presented_secret: str
    token_secret: str


# ---------------------------------------------------------------------------
# Predicates – object-level narrowing
# ---------------------------------------------------------------------------

def _is_self(principal: Principal, resource: Any) -> bool:
    target = getattr(resource, "principal_id", resource)
    return principal.id is not None and target is not None and str(target) == principal.id


def _holds_session_token(principal: Principal, resource: Any) -> bool:
    if not isinstance(resource, SessionTokenCheck):
        return False
    return hmac.compare_digest(resource.presented_secret, resource.token_secret)


@dataclass(frozen=True)
class Rule:
    name: str
    resource_kind: ResourceKind
    operations: frozenset
    principals: frozenset
    predicate: Callable[[Principal, Any], bool] | None = None

    def allows(self, principal: Principal, operation: Operation, resource: Any) -> bool:
        if operation not in self.operations or principal.kind not in self.principals:
            return False
        if self.predicate is None:
            return True
        return self.predicate(principal, resource)


def _rule(name, kind, operations, principals, predicate=None) -> Rule:
    return Rule(name, kind, frozenset(operations), frozenset(principals), predicate)


_R, _C, _U, _D = Operation.READ, Operation.CREATE, Operation.UPDATE, Operation.DELETE
_ADMIN = {PrincipalKind.ADMIN}
_BACKEND = {PrincipalKind.TRUSTED_BACKEND}

POLICIES: tuple[Rule, ...] = (
    # Patients: the public flow may only create; staff read/update; admin deletes.
    _rule("Intake flow can create patients", ResourceKind.PATIENT, {_C},
          {PrincipalKind.ANONYMOUS, PrincipalKind.TRUSTED_BACKEND}),
    _rule("Medical staff can view and update patients", ResourceKind.PATIENT, {_R, _U}, STAFF),
    _rule("Only admins can delete patients", ResourceKind.PATIENT, {_D}, _ADMIN),
    # Intake forms: creation only through the trusted submit operation.
    _rule("Trusted submit can create intake forms", ResourceKind.INTAKE_FORM, {_C}, _BACKEND),
    _rule("Trusted backend can attach follow-up results", ResourceKind.INTAKE_FORM, {_R, _U},
          _BACKEND),
    _rule("Medical staff can view and update intake forms", ResourceKind.INTAKE_FORM,
          {_R, _U}, STAFF),
    _rule("Only admins can delete intake forms", ResourceKind.INTAKE_FORM, {_D}, _ADMIN),
    # Generated documents live in a private bucket.
    _rule("Medical staff can view intake documents", ResourceKind.STORED_DOCUMENT, {_R}, STAFF),
    _rule("System can write intake documents", ResourceKind.STORED_DOCUMENT, {_R, _C, _U, _D},
          _BACKEND),
    # Audit trail: admins read; anyone authenticated (or the backend) appends.
    _rule("Only admins can view audit logs", ResourceKind.AUDIT_LOG, {_R}, _ADMIN),
    _rule("Actors can append audit logs", ResourceKind.AUDIT_LOG, {_C},
          AUTHENTICATED | _BACKEND),
    # Roles: self-read, admin manages.
    _rule("Users can view their own role", ResourceKind.ROLE_ASSIGNMENT, {_R}, AUTHENTICATED,
          _is_self),
    _rule("Admins can manage roles", ResourceKind.ROLE_ASSIGNMENT, {_R, _C, _U, _D}, _ADMIN),
    # Notification failures.
    _rule("Medical staff can view email logs", ResourceKind.NOTIFICATION_FAILURE, {_R}, STAFF),
    _rule("System can record email logs", ResourceKind.NOTIFICATION_FAILURE, {_C}, _BACKEND),
    # Intake sessions carry name/phone only.
    _rule("Anyone can start an intake session", ResourceKind.INTAKE_SESSION, {_C},
          {PrincipalKind.ANONYMOUS, PrincipalKind.TRUSTED_BACKEND}),
    _rule("Token holders can view their session", ResourceKind.INTAKE_SESSION, {_R, _U},
          {PrincipalKind.ANONYMOUS}, _holds_session_token),
    _rule("Medical staff can view intake sessions", ResourceKind.INTAKE_SESSION, {_R}, STAFF),
    _rule("System manages intake sessions", ResourceKind.INTAKE_SESSION, {_R, _U, _D}, _BACKEND),
    # Milestones are recorded by the backend on the visitor's behalf.
    _rule("System can record milestones", ResourceKind.INTAKE_MILESTONE, {_C}, _BACKEND),
    _rule("Medical staff can view milestones", ResourceKind.INTAKE_MILESTONE, {_R}, STAFF),
)


def authorize(
    principal: Principal,
    operation: Operation,
    resource_kind: ResourceKind,
    resource: Any = None,
) -> bool:
    """Return True when any policy for ``resource_kind`` allows the operation."""
    return any(
        rule.allows(principal, operation, resource)
        for rule in POLICIES
        if rule.resource_kind == resource_kind
    )


def require(
    principal: Principal,
    operation: Operation,
    resource_kind: ResourceKind,
    resource: Any = None,
) -> None:
    """Raise AuthorizationDenied unless ``authorize`` allows the operation."""
    if not authorize(principal, operation, resource_kind, resource):
        logger.warning(
            "Denied %s %s on %s", principal.kind.value, operation.value, resource_kind.value
        )
        raise AuthorizationDenied()
