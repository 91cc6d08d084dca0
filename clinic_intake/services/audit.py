"""Audit logging service for privileged access to patient data."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_intake.models.intake import AuditLog
from clinic_intake.services.policy import Operation, Principal, ResourceKind, require

logger = logging.getLogger(__name__)


def snapshot(record: Any, fields: Iterable[str]) -> dict[str, Any]:
    """JSON-safe copy of selected attributes, used for before/after values."""
    values: dict[str, Any] = {}
    for name in fields:
        value = getattr(record, name)
        if isinstance(value, (UUID, datetime)):
            value = str(value) if isinstance(value, UUID) else value.isoformat()
        values[name] = value
    return values


def log_action(
    db: Session,
    principal: Principal,
    *,
    action: str,
    table_name: str,
    record_id: UUID | str | None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> None:
    """Write an immutable audit log entry. Pure reads carry no values."""
    require(principal, Operation.CREATE, ResourceKind.AUDIT_LOG)
    entry = AuditLog(
        actor=principal.audit_actor,
        action=action,
        table_name=table_name,
        record_id=str(record_id) if record_id is not None else None,
        old_values=old_values,
        new_values=new_values,
    )
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", principal.audit_actor, action, table_name, record_id)


def list_audit_logs(
    db: Session,
    principal: Principal,
    *,
    table_name: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLog]:
    require(principal, Operation.READ, ResourceKind.AUDIT_LOG)
    query = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id)
    if table_name:
        query = query.where(AuditLog.table_name == table_name)
    return list(db.scalars(query.limit(limit).offset(offset)))
