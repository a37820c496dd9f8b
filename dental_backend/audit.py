"""
Bitácora de auditoría (audit_logs).

Los registros se escriben en la misma sesión que la operación auditada:
si la operación hace rollback, el registro tampoco queda.
"""
from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .auth_models import AuditAction, AuditLog, Profile
from .db import db_session


def _serialize(obj: Any) -> Any:
    """Decimal, fechas y enums a tipos JSON."""
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(v) for v in obj]
    return obj


def record(
    s: Session,
    actor: Profile | None,
    action: AuditAction,
    entity_type: str,
    entity_id: str | None = None,
    old_data: dict[str, Any] | None = None,
    new_data: dict[str, Any] | None = None,
) -> None:
    s.add(
        AuditLog(
            user_id=actor.id if actor else None,
            user_email=actor.email if actor else None,
            user_role=actor.role.value if actor else None,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            old_data=_serialize(old_data) if old_data is not None else None,
            new_data=_serialize(new_data) if new_data is not None else None,
        )
    )


def list_logs(
    action: str | None = None,
    entity_type: str | None = None,
    limit: int = 200,
) -> list[dict]:
    with db_session() as s:
        q = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
        if action:
            q = q.where(AuditLog.action == AuditAction(action))
        if entity_type:
            q = q.where(AuditLog.entity_type == entity_type)
        return [
            {
                "id": log.id,
                "user_id": log.user_id,
                "user_email": log.user_email,
                "user_role": log.user_role,
                "action": log.action.value,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "old_data": log.old_data,
                "new_data": log.new_data,
                "created_at": log.created_at.isoformat(),
            }
            for log in s.scalars(q)
        ]


def log_read(actor: Profile, entity_type: str, entity_id: str | None = None) -> None:
    """Lecturas de auditores externos quedan registradas como READ."""
    with db_session() as s:
        record(s, actor, AuditAction.READ, entity_type, entity_id)
