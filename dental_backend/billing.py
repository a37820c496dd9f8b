"""Pagos de pacientes, comisiones de doctores y resumen de finanzas."""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from . import audit
from .auth_models import AuditAction, Profile
from .db import db_session
from .exceptions import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    CommissionSetting,
    CommissionStatus,
    Doctor,
    DoctorCommission,
    Patient,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Treatment,
    now,
)
from .realtime import broker

logger = logging.getLogger(__name__)

CHANNEL = "payments"
ZERO = Decimal("0")
CENT = Decimal("0.01")


def _q(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def payment_flat(p: Payment, patient_name: str | None = None) -> dict:
    return {
        "id": p.id,
        "patient_id": p.patient_id,
        "patient": patient_name,
        "user_id": p.user_id,
        "appointment_id": p.appointment_id,
        "doctor_id": p.doctor_id,
        "treatment_id": p.treatment_id,
        "amount": p.amount,
        "payment_method": p.payment_method.value,
        "status": p.status.value,
        "notes": p.notes,
        "created_at": p.created_at.isoformat(),
        "paid_at": p.paid_at.isoformat() if p.paid_at else None,
    }


# =========================
# Comisiones
# =========================
def set_commission(doctor_id: str, percentage: Decimal, actor: Profile | None = None) -> Decimal:
    """Guarda el porcentaje del doctor, acotado a 0..100."""
    pct = min(max(Decimal(percentage), ZERO), Decimal("100"))
    with db_session() as s:
        if not s.get(Doctor, doctor_id):
            raise NotFoundError("Doctor no encontrado.")
        row = s.scalar(select(CommissionSetting).where(CommissionSetting.doctor_id == doctor_id))
        old = row.percentage if row else None
        if row is None:
            row = CommissionSetting(doctor_id=doctor_id, percentage=pct)
            s.add(row)
        else:
            row.percentage = pct
        audit.record(
            s, actor, AuditAction.UPDATE, "commission_settings", doctor_id,
            old_data={"percentage": old}, new_data={"percentage": pct},
        )
        return pct


def _create_commission(s: Session, p: Payment) -> DoctorCommission | None:
    if not p.doctor_id:
        return None
    setting = s.scalar(select(CommissionSetting).where(CommissionSetting.doctor_id == p.doctor_id))
    if setting is None or setting.percentage <= 0:
        return None
    exists = s.scalar(select(DoctorCommission).where(DoctorCommission.payment_id == p.id))
    if exists is not None:
        return exists
    c = DoctorCommission(
        doctor_id=p.doctor_id,
        payment_id=p.id,
        percentage=setting.percentage,
        amount=_q(p.amount * setting.percentage / Decimal("100")),
        status=CommissionStatus.PENDING,
    )
    s.add(c)
    return c


def list_commissions(doctor_id: str | None = None, status: CommissionStatus | None = None) -> list[dict]:
    with db_session() as s:
        q = (
            select(DoctorCommission, Doctor.full_name)
            .join(Doctor, Doctor.id == DoctorCommission.doctor_id)
            .order_by(DoctorCommission.created_at.desc())
        )
        if doctor_id:
            q = q.where(DoctorCommission.doctor_id == doctor_id)
        if status is not None:
            q = q.where(DoctorCommission.status == status)
        return [
            {
                "id": c.id,
                "doctor_id": c.doctor_id,
                "doctor": name,
                "payment_id": c.payment_id,
                "percentage": c.percentage,
                "amount": c.amount,
                "status": c.status.value,
                "created_at": c.created_at.isoformat(),
                "paid_at": c.paid_at.isoformat() if c.paid_at else None,
            }
            for c, name in s.execute(q).all()
        ]


def mark_commission_paid(commission_id: int, actor: Profile | None = None) -> None:
    with db_session() as s:
        c = s.get(DoctorCommission, commission_id)
        if not c:
            raise NotFoundError("Comisión no encontrada.")
        if c.status == CommissionStatus.PAID:
            raise InvalidTransitionError("La comisión ya está pagada.")
        c.status = CommissionStatus.PAID
        c.paid_at = now()
        audit.record(s, actor, AuditAction.UPDATE, "doctor_commissions", str(c.id), new_data={"status": c.status})


# =========================
# Pagos
# =========================
def record_payment(
    cashier: Profile,
    patient_id: str,
    amount: Decimal,
    payment_method: PaymentMethod,
    status: PaymentStatus = PaymentStatus.COMPLETED,
    appointment_id: str | None = None,
    doctor_id: str | None = None,
    treatment_id: str | None = None,
    notes: str | None = None,
) -> str:
    """
    Use case: cobrar a un paciente.
    - monto > 0
    - si nace completado, genera la comisión del doctor (si tiene porcentaje)
    """
    if amount is None or amount <= 0:
        raise ValidationError("El monto debe ser mayor a cero.")
    if status == PaymentStatus.CANCELLED:
        raise ValidationError("No se puede registrar un pago cancelado.")

    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Paciente no encontrado.")
        if doctor_id and not s.get(Doctor, doctor_id):
            raise NotFoundError("Doctor no encontrado.")
        if treatment_id and not s.get(Treatment, treatment_id):
            raise NotFoundError("Tratamiento no encontrado.")

        p = Payment(
            patient_id=patient_id,
            user_id=cashier.id,
            appointment_id=appointment_id,
            doctor_id=doctor_id,
            treatment_id=treatment_id,
            amount=_q(Decimal(amount)),
            payment_method=payment_method,
            status=status,
            notes=notes,
            paid_at=now() if status == PaymentStatus.COMPLETED else None,
        )
        s.add(p)
        s.flush()
        if status == PaymentStatus.COMPLETED:
            _create_commission(s, p)
        audit.record(
            s, cashier, AuditAction.CREATE, "payments", p.id,
            new_data={"amount": p.amount, "method": payment_method, "status": status},
        )
        payment_id = p.id

    broker.publish(CHANNEL, "INSERT", payment_id, user_id=cashier.id, status=status.value)
    return payment_id


def set_payment_status(payment_id: str, status: PaymentStatus, actor: Profile | None = None) -> dict:
    """pending -> completed | cancelled, completed -> cancelled."""
    with db_session() as s:
        p = s.get(Payment, payment_id)
        if not p:
            raise NotFoundError("Pago no encontrado.")
        if p.status == status:
            return payment_flat(p)
        if p.status == PaymentStatus.CANCELLED or status == PaymentStatus.PENDING:
            raise InvalidTransitionError(f"No se puede pasar de {p.status.value} a {status.value}.")

        old = p.status
        p.status = status
        if status == PaymentStatus.COMPLETED:
            p.paid_at = now()
            _create_commission(s, p)
        else:
            pending = s.scalar(
                select(DoctorCommission).where(
                    and_(DoctorCommission.payment_id == p.id, DoctorCommission.status == CommissionStatus.PENDING)
                )
            )
            if pending is not None:
                s.delete(pending)
        audit.record(s, actor, AuditAction.UPDATE, "payments", p.id, old_data={"status": old}, new_data={"status": status})
        out = payment_flat(p)

    broker.publish(CHANNEL, "UPDATE", payment_id, user_id=out["user_id"], status=out["status"])
    return out


def list_payments(
    date_from: date | None = None,
    date_to: date | None = None,
    patient_id: str | None = None,
    user_id: str | None = None,
    status: PaymentStatus | None = None,
) -> list[dict]:
    with db_session() as s:
        q = (
            select(Payment, Patient.first_name, Patient.last_name)
            .join(Patient, Patient.id == Payment.patient_id)
            .order_by(Payment.created_at.desc())
        )
        if date_from:
            q = q.where(Payment.created_at >= datetime.combine(date_from, time.min))
        if date_to:
            q = q.where(Payment.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
        if patient_id:
            q = q.where(Payment.patient_id == patient_id)
        if user_id:
            q = q.where(Payment.user_id == user_id)
        if status is not None:
            q = q.where(Payment.status == status)
        return [payment_flat(p, f"{fn} {ln}") for p, fn, ln in s.execute(q).all()]


def revenue_by_method(s: Session, start: datetime, end: datetime) -> dict[str, Decimal]:
    """Pagos completados en [start, end) agrupados por método."""
    rows = s.execute(
        select(Payment.payment_method, func.coalesce(func.sum(Payment.amount), 0))
        .where(
            and_(
                Payment.status == PaymentStatus.COMPLETED,
                Payment.paid_at >= start,
                Payment.paid_at < end,
            )
        )
        .group_by(Payment.payment_method)
    ).all()
    out = {m.value: ZERO for m in PaymentMethod}
    for method, total in rows:
        out[method.value] = _q(Decimal(str(total)))
    return out


def finance_summary(today: date | None = None) -> dict:
    today = today or date.today()
    day_start = datetime.combine(today, time.min)
    month_start = datetime.combine(today.replace(day=1), time.min)

    with db_session() as s:
        by_day = revenue_by_method(s, day_start, day_start + timedelta(days=1))
        by_month = revenue_by_method(s, month_start, day_start + timedelta(days=1))
        pending = s.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.status == PaymentStatus.PENDING)
        )
        return {
            "date": today.isoformat(),
            "today": {"total": sum(by_day.values(), ZERO), "by_method": by_day},
            "month": {"total": sum(by_month.values(), ZERO), "by_method": by_month},
            "pending_total": _q(Decimal(str(pending))),
        }
