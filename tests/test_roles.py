"""Tests for role assignment and first-admin bootstrap."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from clinic_intake.models.intake import AuditLog, RoleAssignment
from clinic_intake.services import roles
from clinic_intake.services.errors import AuthorizationDenied, RoleConflict, ValidationFailed
from clinic_intake.services.policy import ANONYMOUS, principal_for


def test_bootstrap_first_admin_only_once(db):
    first = principal_for("u-first", None)
    assignment = roles.bootstrap_admin(db, first)
    assert assignment.role == "admin"
    assert roles.load_role(db, "u-first") == "admin"

    with pytest.raises(AuthorizationDenied):
        roles.bootstrap_admin(db, principal_for("u-second", None))


def test_concurrent_bootstrap_claims_yield_one_admin(db, monkeypatch):
    roles.bootstrap_admin(db, principal_for("u-first", None))

    # the second caller checked before the first claim committed
    monkeypatch.setattr(roles, "_admin_exists", lambda db: False)
    with pytest.raises(AuthorizationDenied):
        roles.bootstrap_admin(db, principal_for("u-second", None))

    assert roles.load_role(db, "u-second") is None
    admins = db.scalar(
        select(func.count()).select_from(RoleAssignment).where(RoleAssignment.role == "admin")
    )
    assert admins == 1


def test_bootstrap_marker_is_unique(db):
    db.add(RoleAssignment(principal_id="u-first", role="admin", bootstrap=True))
    db.commit()
    db.add(RoleAssignment(principal_id="u-second", role="admin", bootstrap=True))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    db.add(RoleAssignment(principal_id="u-third", role="receptionist"))
    db.add(RoleAssignment(principal_id="u-fourth", role="receptionist"))
    db.commit()


def test_bootstrap_requires_authentication(db):
    with pytest.raises(AuthorizationDenied):
        roles.bootstrap_admin(db, ANONYMOUS)


def test_admin_assigns_role_and_it_is_audited(db, grant):
    grant("u-admin", "admin")
    admin = principal_for("u-admin", "admin")

    roles.assign_role(db, admin, "u-new", "receptionist")
    assert roles.load_role(db, "u-new") == "receptionist"

    entry = db.scalar(select(AuditLog).where(AuditLog.action == "ROLE_ASSIGN"))
    assert entry.actor == "u-admin"
    assert entry.new_values["role"] == "receptionist"


def test_second_assignment_conflicts(db, grant):
    grant("u-admin", "admin")
    admin = principal_for("u-admin", "admin")
    roles.assign_role(db, admin, "u-new", "receptionist")

    with pytest.raises(RoleConflict) as exc_info:
        roles.assign_role(db, admin, "u-new", "medical_staff")
    assert exc_info.value.details["existing_role"] == "receptionist"


def test_unknown_role_rejected(db):
    admin = principal_for("u-admin", "admin")
    with pytest.raises(ValidationFailed):
        roles.assign_role(db, admin, "u-new", "superuser")


def test_non_admin_cannot_assign(db):
    with pytest.raises(AuthorizationDenied):
        roles.assign_role(db, principal_for("u-staff", "medical_staff"), "u-new", "admin")


def test_self_read_only(db, grant):
    grant("u-staff", "receptionist")
    staff = principal_for("u-staff", "receptionist")

    assert roles.get_role(db, staff, "u-staff") == "receptionist"
    with pytest.raises(AuthorizationDenied):
        roles.get_role(db, staff, "u-other")
    with pytest.raises(AuthorizationDenied):
        roles.list_roles(db, staff)
