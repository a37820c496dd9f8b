"""Tablero y reporte por rango de fechas."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import and_, func, select

from .billing import revenue_by_method
from .db import db_session
from .models import (
    Appointment,
    Doctor,
    Patient,
    PatientRecord,
    PatientSource,
    Payment,
    PaymentStatus,
    Treatment,
)

ZERO = Decimal("0")


def _bounds(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    return datetime.combine(date_from, time.min), datetime.combine(date_to + timedelta(days=1), time.min)


def dashboard(today: date | None = None) -> dict:
    today = today or date.today()
    day_start, day_end = _bounds(today, today)
    month_start = datetime.combine(today.replace(day=1), time.min)

    with db_session() as s:
        patients = s.scalar(select(func.count(Patient.id))) or 0
        appts_today = s.scalar(
            select(func.count(Appointment.id)).where(
                and_(Appointment.start_time >= day_start, Appointment.start_time < day_end)
            )
        ) or 0
        revenue_today = sum(revenue_by_method(s, day_start, day_end).values(), ZERO)
        revenue_month = sum(revenue_by_method(s, month_start, day_end).values(), ZERO)

    return {
        "date": today.isoformat(),
        "patients": patients,
        "appointments_today": appts_today,
        "revenue_today": revenue_today,
        "revenue_month": revenue_month,
    }


def range_report(date_from: date, date_to: date) -> dict:
    if date_to < date_from:
        raise ValueError("La fecha final debe ser posterior a la inicial.")
    start, end = _bounds(date_from, date_to)

    with db_session() as s:
        by_method = revenue_by_method(s, start, end)

        by_status = {
            st.value: n
            for st, n in s.execute(
                select(Appointment.status, func.count(Appointment.id))
                .where(and_(Appointment.start_time >= start, Appointment.start_time < end))
                .group_by(Appointment.status)
            ).all()
        }

        by_doctor = [
            {"doctor": name or "Sin asignar", "appointments": n}
            for name, n in s.execute(
                select(Doctor.full_name, func.count(Appointment.id))
                .select_from(Appointment)
                .outerjoin(Doctor, Doctor.id == Appointment.doctor_id)
                .where(and_(Appointment.start_time >= start, Appointment.start_time < end))
                .group_by(Doctor.full_name)
                .order_by(func.count(Appointment.id).desc())
            ).all()
        ]

        new_patients = s.scalar(
            select(func.count(Patient.id)).where(and_(Patient.created_at >= start, Patient.created_at < end))
        ) or 0

        sources = [
            {"source": name, "patients": n}
            for name, n in s.execute(
                select(PatientSource.name, func.count(PatientRecord.id))
                .join(PatientRecord, PatientRecord.source_id == PatientSource.id)
                .join(Patient, Patient.id == PatientRecord.patient_id)
                .where(and_(Patient.created_at >= start, Patient.created_at < end))
                .group_by(PatientSource.name)
                .order_by(func.count(PatientRecord.id).desc())
            ).all()
        ]

        top_treatments = [
            {"treatment": name, "payments": n, "revenue": Decimal(str(total)).quantize(Decimal("0.01"))}
            for name, n, total in s.execute(
                select(Treatment.name, func.count(Payment.id), func.sum(Payment.amount))
                .join(Payment, Payment.treatment_id == Treatment.id)
                .where(
                    and_(
                        Payment.status == PaymentStatus.COMPLETED,
                        Payment.paid_at >= start,
                        Payment.paid_at < end,
                    )
                )
                .group_by(Treatment.name)
                .order_by(func.sum(Payment.amount).desc())
                .limit(10)
            ).all()
        ]

    return {
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "revenue": {"total": sum(by_method.values(), ZERO), "by_method": by_method},
        "appointments_by_status": by_status,
        "appointments_by_doctor": by_doctor,
        "new_patients": new_patients,
        "referral_sources": sources,
        "top_treatments": top_treatments,
    }
