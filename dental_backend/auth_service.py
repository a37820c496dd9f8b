from __future__ import annotations

import logging

from sqlalchemy import select

from dental_backend import audit
from dental_backend.auth_models import AuditAction, AuditSession, Profile, RevokedToken, Role
from dental_backend.auth_security import hash_password, verify_password
from dental_backend.db import db_session
from dental_backend.exceptions import ConflictError, NotFoundError, ValidationError
from dental_backend.models import now

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

# El admin tiene todos los permisos
ROLE_PERMISSIONS: dict[Role, set[str]] = {
    Role.RECEPTIONIST: {"agenda", "patients", "appointments", "cash_register"},
    Role.DOCTOR: {"agenda", "patients", "appointments", "treatments", "prescriptions", "odontogram", "budgets"},
    Role.AUDITOR: {"view_audit_logs", "view_patients", "view_payments", "view_cash_registers"},
}


def has_permission(profile: Profile | None, permission: str) -> bool:
    if profile is None:
        return False
    if profile.role == Role.ADMIN:
        return True
    return permission in ROLE_PERMISSIONS.get(profile.role, set())


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError("Email inválido.")
    return email


def _check_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"La contraseña debe tener al menos {MIN_PASSWORD_LENGTH} caracteres.")


def sign_up(
    email: str,
    password: str,
    first_name: str | None = None,
    last_name: str | None = None,
    role: Role = Role.RECEPTIONIST,
    must_change_password: bool = False,
    actor: Profile | None = None,
) -> str:
    email = _normalize_email(email)
    _check_password(password)

    with db_session() as s:
        exists = s.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
        if exists:
            raise ConflictError("El email ya está registrado.")

        p = Profile(
            email=email,
            password_hash=hash_password(password),
            first_name=(first_name or "").strip() or None,
            last_name=(last_name or "").strip() or None,
            role=role,
            is_active=True,
            must_change_password=must_change_password,
        )
        s.add(p)
        s.flush()
        audit.record(s, actor or p, AuditAction.REGISTER, "profiles", p.id, new_data={"email": email, "role": role})
        logger.info("Perfil creado %s (%s)", email, role.value)
        return p.id


def authenticate(email: str, password: str) -> Profile | None:
    email = (email or "").strip().lower()
    with db_session() as s:
        p = s.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
        if not p or not p.is_active:
            return None
        if not verify_password(password, p.password_hash):
            logger.warning("Intento de acceso fallido para %s", email)
            return None
        p.last_login = now()
        audit.record(s, p, AuditAction.LOGIN, "profiles", p.id)
        return p


def get_profile_by_id(user_id: str) -> Profile | None:
    with db_session() as s:
        return s.get(Profile, user_id)


def sign_out(profile: Profile, jti: str | None) -> None:
    with db_session() as s:
        if jti and s.get(RevokedToken, jti) is None:
            s.add(RevokedToken(jti=jti))
        audit.record(s, profile, AuditAction.LOGOUT, "profiles", profile.id)


def is_token_revoked(jti: str | None) -> bool:
    if not jti:
        return False
    with db_session() as s:
        return s.get(RevokedToken, jti) is not None


def change_password(user_id: str, current_password: str, new_password: str) -> None:
    _check_password(new_password)
    with db_session() as s:
        p = s.get(Profile, user_id)
        if not p:
            raise NotFoundError("Usuario no encontrado.")
        if not verify_password(current_password, p.password_hash):
            raise ValidationError("La contraseña actual no es correcta.")
        if current_password == new_password:
            raise ValidationError("La nueva contraseña debe ser distinta de la actual.")
        p.password_hash = hash_password(new_password)
        p.must_change_password = False
        audit.record(s, p, AuditAction.UPDATE, "profiles", p.id, new_data={"password_changed": True})


def active_audit_session(user_id: str) -> AuditSession | None:
    """
    Sesión de auditor vigente (no revocada, no expirada).
    Se consulta en cada request protegida y actualiza last_access.
    """
    when = now()
    with db_session() as s:
        q = (
            select(AuditSession)
            .where(
                AuditSession.user_id == user_id,
                AuditSession.revoked_at.is_(None),
                AuditSession.is_active.is_(True),
                AuditSession.expires_at > when,
            )
            .order_by(AuditSession.expires_at.desc())
            .limit(1)
        )
        sess = s.scalars(q).first()
        if sess:
            sess.last_access = when
        return sess


def profile_flat(p: Profile) -> dict:
    return {
        "id": p.id,
        "email": p.email,
        "first_name": p.first_name,
        "last_name": p.last_name,
        "role": p.role.value,
        "is_active": p.is_active,
        "must_change_password": p.must_change_password,
        "last_login": p.last_login.isoformat() if p.last_login else None,
    }
