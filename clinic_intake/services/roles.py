"""Role assignment: one role per authenticated principal, managed by admins."""

from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_intake.models.intake import ROLE_VALUES, RoleAssignment
from clinic_intake.services.audit import log_action, snapshot
from clinic_intake.services.errors import (
    AuthorizationDenied,
    PersistenceFailure,
    RoleConflict,
    ValidationFailed,
)
from clinic_intake.services.policy import Operation, Principal, ResourceKind, require

logger = logging.getLogger(__name__)

_ROLE_FIELDS = ("principal_id", "role", "granted_by")


def load_role(db: Session, principal_id: str) -> str | None:
    """Role lookup used to build the per-request principal snapshot."""
    return db.scalar(
        select(RoleAssignment.role).where(RoleAssignment.principal_id == principal_id)
    )


def get_role(db: Session, principal: Principal, target_principal_id: str) -> str | None:
    """Self-read for everyone authenticated; any principal for admins."""
    require(principal, Operation.READ, ResourceKind.ROLE_ASSIGNMENT, target_principal_id)
    return load_role(db, target_principal_id)


def list_roles(db: Session, principal: Principal) -> list[RoleAssignment]:
    require(principal, Operation.READ, ResourceKind.ROLE_ASSIGNMENT)
    return list(db.scalars(select(RoleAssignment).order_by(RoleAssignment.granted_at)))


def _insert_role(db: Session, actor: Principal, target_principal_id: str, role: str,
                 granted_by: str | None, bootstrap: bool = False) -> RoleAssignment:
    assignment = RoleAssignment(
        principal_id=target_principal_id,
        role=role,
        granted_by=granted_by,
        bootstrap=True if bootstrap else None,
    )
    db.add(assignment)
    try:
        db.flush()
        log_action(
            db,
            actor,
            action="ROLE_ASSIGN",
            table_name="role_assignments",
            record_id=assignment.id,
            new_values=snapshot(assignment, _ROLE_FIELDS),
        )
        db.commit()
    except IntegrityError as exc:
        # lost a race: same principal, or another first-admin claim
        db.rollback()
        existing = load_role(db, target_principal_id)
        if existing:
            raise RoleConflict(target_principal_id, existing) from exc
        if bootstrap:
            raise AuthorizationDenied() from exc
        raise PersistenceFailure() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Role assignment failed for %s: %s", target_principal_id, exc)
        raise PersistenceFailure() from exc
    db.refresh(assignment)
    return assignment


def assign_role(
    db: Session, principal: Principal, target_principal_id: str, role: str
) -> RoleAssignment:
    """Admin-only. A principal holds at most one role; a second assignment conflicts."""
    require(principal, Operation.CREATE, ResourceKind.ROLE_ASSIGNMENT)
    if role not in ROLE_VALUES:
        raise ValidationFailed(
            [{"field": "role", "message": f"must be one of {', '.join(ROLE_VALUES)}"}]
        )
    existing = load_role(db, target_principal_id)
    if existing is not None:
        raise RoleConflict(target_principal_id, existing)
    assignment = _insert_role(db, principal, target_principal_id, role, principal.id)
    logger.info("Assigned role %s to %s", role, target_principal_id)
    return assignment


def _admin_exists(db: Session) -> bool:
    return db.scalar(
        select(RoleAssignment.id)
        .where(or_(RoleAssignment.role == "admin", RoleAssignment.bootstrap.is_(True)))
        .limit(1)
    ) is not None


def bootstrap_admin(db: Session, principal: Principal) -> RoleAssignment:
    """
    One-time setup: the first authenticated principal to call this while no
    admin exists becomes admin. Afterwards admins are created via assign_role.
    Concurrent claims are settled by the unique ``bootstrap`` marker: one
    wins, the others are denied.
    """
    if not principal.is_authenticated or principal.id is None:
        raise AuthorizationDenied()
    if _admin_exists(db):
        raise AuthorizationDenied()
    existing = load_role(db, principal.id)
    if existing is not None:
        raise RoleConflict(principal.id, existing)
    assignment = _insert_role(db, principal, principal.id, "admin", principal.id, bootstrap=True)
    logger.warning("Bootstrapped first admin %s", principal.id)
    return assignment
