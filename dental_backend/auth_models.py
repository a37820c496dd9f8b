from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dental_backend.db import Base
from dental_backend.models import new_uuid, now, value_enum


class Role(enum.Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    RECEPTIONIST = "receptionist"
    AUDITOR = "auditor"


class AuditAction(enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    READ = "READ"


class AuditPurpose(enum.Enum):
    MIGRATION = "migration"
    COMPLIANCE = "compliance"
    FINANCIAL = "financial"
    OTHER = "other"


class Profile(Base):
    """
    Usuario del sistema (personal o auditor externo).
    - email único
    - password_hash con bcrypt (passlib)
    """
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    role: Mapped[Role] = mapped_column(value_enum(Role), default=Role.RECEPTIONIST, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_login: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)

    audit_sessions: Mapped[list["AuditSession"]] = relationship(
        back_populates="profile", foreign_keys="AuditSession.user_id", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email


class RevokedToken(Base):
    """jti de tokens cerrados con sign-out."""
    __tablename__ = "revoked_tokens"

    jti: Mapped[str] = mapped_column(String(36), primary_key=True)
    revoked_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)


class AuditSession(Base):
    __tablename__ = "audit_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)

    auditor_name: Mapped[str] = mapped_column(String(160), nullable=False)
    auditor_email: Mapped[str] = mapped_column(String(120), nullable=False)
    auditor_company: Mapped[str | None] = mapped_column(String(160), nullable=True)
    purpose: Mapped[AuditPurpose] = mapped_column(value_enum(AuditPurpose), nullable=False)
    access_level: Mapped[str] = mapped_column(String(20), default="read_only", nullable=False)

    can_view_patients: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_view_appointments: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_view_treatments: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_view_payments: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_view_cash_registers: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_export_data: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)
    last_access: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    profile: Mapped["Profile"] = relationship(back_populates="audit_sessions", foreign_keys=[user_id])

    def status_at(self, when: datetime) -> str:
        if self.revoked_at is not None:
            return "revoked"
        if self.expires_at <= when:
            return "expired"
        return "active"


class AuditLog(Base):
    """Bitácora de solo inserción."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    user_role: Mapped[str | None] = mapped_column(String(20), nullable=True)
    action: Mapped[AuditAction] = mapped_column(value_enum(AuditAction), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(60), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    old_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)
