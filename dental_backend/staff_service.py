"""Administración de personal y de sesiones de auditor externo (solo admin)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select

from dental_backend import audit
from dental_backend.auth_models import AuditAction, AuditPurpose, AuditSession, Profile, Role
from dental_backend.auth_security import generate_password
from dental_backend.auth_service import profile_flat, sign_up
from dental_backend.db import db_session
from dental_backend.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from dental_backend.models import now

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_HOURS = 72  # 3 días


@dataclass(frozen=True)
class NewCredentials:
    user_id: str
    email: str
    temp_password: str
    session_id: str | None = None
    expires_at: datetime | None = None


def list_profiles() -> list[dict]:
    with db_session() as s:
        rows = s.scalars(select(Profile).order_by(Profile.last_name, Profile.first_name, Profile.email))
        return [profile_flat(p) for p in rows]


def create_staff_user(actor: Profile, email: str, first_name: str, last_name: str, role: Role) -> NewCredentials:
    if role == Role.AUDITOR:
        raise ValidationError("Los auditores se crean desde Sesiones de Auditoría.")
    temp = generate_password()
    user_id = sign_up(email, temp, first_name, last_name, role=role, must_change_password=True, actor=actor)
    return NewCredentials(user_id=user_id, email=email.strip().lower(), temp_password=temp)


def set_role(actor: Profile, user_id: str, role: Role) -> None:
    with db_session() as s:
        p = s.get(Profile, user_id)
        if not p:
            raise NotFoundError("Usuario no encontrado.")
        old = p.role
        p.role = role
        audit.record(s, actor, AuditAction.UPDATE, "profiles", p.id, old_data={"role": old}, new_data={"role": role})


def set_active(actor: Profile, user_id: str, is_active: bool) -> None:
    if actor.id == user_id and not is_active:
        raise ValidationError("No puedes desactivar tu propio usuario.")
    with db_session() as s:
        p = s.get(Profile, user_id)
        if not p:
            raise NotFoundError("Usuario no encontrado.")
        p.is_active = is_active
        audit.record(
            s, actor, AuditAction.UPDATE, "profiles", p.id,
            old_data={"is_active": not is_active}, new_data={"is_active": is_active},
        )


# =========================
# Sesiones de auditor
# =========================
def create_audit_session(
    actor: Profile,
    auditor_name: str,
    auditor_email: str,
    purpose: AuditPurpose = AuditPurpose.MIGRATION,
    duration_hours: int = DEFAULT_AUDIT_HOURS,
    auditor_company: str | None = None,
    can_view_patients: bool = True,
    can_view_appointments: bool = True,
    can_view_treatments: bool = True,
    can_view_payments: bool = True,
    can_view_cash_registers: bool = True,
    can_export_data: bool = False,
) -> NewCredentials:
    """
    Crea el perfil del auditor (rol auditor, contraseña temporal)
    y la sesión con vencimiento.
    """
    auditor_name = (auditor_name or "").strip()
    if not auditor_name or not (auditor_email or "").strip():
        raise ValidationError("Nombre y email son requeridos.")
    if duration_hours <= 0:
        raise ValidationError("La duración debe ser mayor a cero horas.")

    first_name, _, last_name = auditor_name.partition(" ")
    temp = generate_password()
    user_id = sign_up(auditor_email, temp, first_name, last_name, role=Role.AUDITOR, actor=actor)

    expires_at = now() + timedelta(hours=duration_hours)
    with db_session() as s:
        sess = AuditSession(
            user_id=user_id,
            created_by=actor.id,
            auditor_name=auditor_name,
            auditor_email=auditor_email.strip().lower(),
            auditor_company=auditor_company,
            purpose=purpose,
            access_level="read_export" if can_export_data else "read_only",
            can_view_patients=can_view_patients,
            can_view_appointments=can_view_appointments,
            can_view_treatments=can_view_treatments,
            can_view_payments=can_view_payments,
            can_view_cash_registers=can_view_cash_registers,
            can_export_data=can_export_data,
            expires_at=expires_at,
        )
        s.add(sess)
        s.flush()
        audit.record(
            s, actor, AuditAction.CREATE, "audit_sessions", sess.id,
            new_data={"auditor_email": sess.auditor_email, "purpose": purpose, "expires_at": expires_at},
        )
        logger.info("Sesión de auditor %s creada hasta %s", sess.auditor_email, expires_at)
        return NewCredentials(
            user_id=user_id,
            email=sess.auditor_email,
            temp_password=temp,
            session_id=sess.id,
            expires_at=expires_at,
        )


def list_audit_sessions() -> list[dict]:
    when = now()
    with db_session() as s:
        rows = s.scalars(select(AuditSession).order_by(AuditSession.created_at.desc()))
        return [
            {
                "id": a.id,
                "user_id": a.user_id,
                "auditor_name": a.auditor_name,
                "auditor_email": a.auditor_email,
                "auditor_company": a.auditor_company,
                "purpose": a.purpose.value,
                "access_level": a.access_level,
                "expires_at": a.expires_at.isoformat(),
                "revoked_at": a.revoked_at.isoformat() if a.revoked_at else None,
                "revoke_reason": a.revoke_reason,
                "last_access": a.last_access.isoformat() if a.last_access else None,
                "status": a.status_at(when),
            }
            for a in rows
        ]


def revoke_audit_session(actor: Profile, session_id: str, reason: str | None = None) -> None:
    with db_session() as s:
        a = s.get(AuditSession, session_id)
        if not a:
            raise NotFoundError("Sesión no encontrada.")
        if a.revoked_at is not None:
            raise InvalidTransitionError("La sesión ya fue revocada.")
        a.is_active = False
        a.revoked_at = now()
        a.revoked_by = actor.id
        a.revoke_reason = (reason or "").strip() or None
        audit.record(s, actor, AuditAction.UPDATE, "audit_sessions", a.id, new_data={"revoked": True, "reason": a.revoke_reason})
