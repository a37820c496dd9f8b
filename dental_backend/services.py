from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import and_, or_, select

from . import audit
from . import auth_models  # noqa: F401  registra profiles/audit_* en el metadata
from .auth_models import AuditAction, Profile
from .clinic import appointment_reminder, whatsapp_link
from .db import Base, db_session, engine
from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import (
    Appointment,
    AppointmentStatus,
    Doctor,
    Patient,
    Treatment,
)

logger = logging.getLogger(__name__)

TREATMENT_CATEGORIES = [
    "Preventivo",
    "Restaurativo",
    "Endodoncia",
    "Periodoncia",
    "Cirugía",
    "Ortodoncia",
    "Estética",
    "Prótesis",
    "Otro",
]


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea las tablas si no existen."""
    Base.metadata.create_all(bind=engine)


# =========================
# Helper / validación
# =========================
def normalize_phone(phone: str | None) -> str | None:
    """Deja solo dígitos; si hay teléfono debe tener exactamente 10."""
    if phone is None or not phone.strip():
        return None
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) != 10:
        raise ValidationError("El teléfono debe tener 10 dígitos.")
    return digits


def _required(value: str | None, message: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(message)
    return value


def _day_range(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


@dataclass(frozen=True)
class PatientData:
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    address: str | None = None
    medical_history: str | None = None


def patient_flat(p: Patient) -> dict:
    return {
        "id": p.id,
        "first_name": p.first_name,
        "last_name": p.last_name,
        "email": p.email,
        "phone": p.phone,
        "date_of_birth": p.date_of_birth.isoformat() if p.date_of_birth else None,
        "address": p.address,
        "medical_history": p.medical_history,
        "created_at": p.created_at.isoformat(),
    }


# =========================
# Pacientes
# =========================
def create_patient(data: PatientData, actor: Profile | None = None) -> str:
    first_name = _required(data.first_name, "Nombre y apellido son obligatorios.")
    last_name = _required(data.last_name, "Nombre y apellido son obligatorios.")
    phone = normalize_phone(data.phone)

    with db_session() as s:
        p = Patient(
            first_name=first_name,
            last_name=last_name,
            email=(data.email or "").strip() or None,
            phone=phone,
            date_of_birth=data.date_of_birth,
            address=data.address,
            medical_history=data.medical_history,
            created_by=actor.id if actor else None,
        )
        s.add(p)
        s.flush()
        audit.record(s, actor, AuditAction.CREATE, "patients", p.id, new_data=patient_flat(p))
        return p.id


def update_patient(patient_id: str, data: PatientData, actor: Profile | None = None) -> dict:
    first_name = _required(data.first_name, "Nombre y apellido son obligatorios.")
    last_name = _required(data.last_name, "Nombre y apellido son obligatorios.")
    phone = normalize_phone(data.phone)

    with db_session() as s:
        p = s.get(Patient, patient_id)
        if not p:
            raise NotFoundError("Paciente no encontrado.")
        old = patient_flat(p)
        p.first_name = first_name
        p.last_name = last_name
        p.email = (data.email or "").strip() or None
        p.phone = phone
        p.date_of_birth = data.date_of_birth
        p.address = data.address
        p.medical_history = data.medical_history
        new = patient_flat(p)
        audit.record(s, actor, AuditAction.UPDATE, "patients", p.id, old_data=old, new_data=new)
        return new


def delete_patient(patient_id: str, actor: Profile | None = None) -> bool:
    with db_session() as s:
        p = s.get(Patient, patient_id)
        if not p:
            return False
        audit.record(s, actor, AuditAction.DELETE, "patients", p.id, old_data=patient_flat(p))
        s.delete(p)
        return True


def get_patient(patient_id: str) -> dict | None:
    with db_session() as s:
        p = s.get(Patient, patient_id)
        return patient_flat(p) if p else None


def search_patients(term: str | None = None, limit: int = 200) -> list[dict]:
    with db_session() as s:
        q = select(Patient).order_by(Patient.last_name, Patient.first_name).limit(limit)
        term = (term or "").strip()
        if term:
            like = f"%{term}%"
            q = q.where(
                or_(
                    Patient.first_name.ilike(like),
                    Patient.last_name.ilike(like),
                    Patient.email.ilike(like),
                    Patient.phone.like(like),
                )
            )
        return [patient_flat(p) for p in s.scalars(q)]


def upcoming_birthdays(days: int = 7, today: date | None = None) -> list[dict]:
    """Pacientes que cumplen años en los próximos `days` días (incluido hoy)."""
    today = today or date.today()
    horizon = [today + timedelta(days=i) for i in range(days + 1)]
    wanted = {(d.month, d.day): d for d in horizon}

    with db_session() as s:
        rows = s.scalars(select(Patient).where(Patient.date_of_birth.is_not(None)))
        out = []
        for p in rows:
            dob = p.date_of_birth
            key = (dob.month, dob.day)
            # 29/02 en año no bisiesto: se festeja el 28/02
            if key == (2, 29) and key not in wanted and (2, 28) in wanted:
                key = (2, 28)
            if key in wanted:
                when = wanted[key]
                out.append(
                    {
                        "patient_id": p.id,
                        "name": p.full_name,
                        "phone": p.phone,
                        "birthday": when.isoformat(),
                        "age": when.year - dob.year,
                        "days_until": (when - today).days,
                    }
                )
        return sorted(out, key=lambda r: r["days_until"])


# =========================
# Doctores
# =========================
def doctor_flat(d: Doctor) -> dict:
    return {
        "id": d.id,
        "full_name": d.full_name,
        "specialty": d.specialty,
        "phone": d.phone,
        "email": d.email,
        "color": d.color,
        "is_active": d.is_active,
    }


def create_doctor(
    full_name: str,
    specialty: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    color: str | None = None,
    actor: Profile | None = None,
) -> str:
    full_name = _required(full_name, "El nombre del doctor es obligatorio.")
    with db_session() as s:
        d = Doctor(
            full_name=full_name,
            specialty=specialty,
            phone=normalize_phone(phone),
            email=email,
            color=color or "#007AFF",
        )
        s.add(d)
        s.flush()
        audit.record(s, actor, AuditAction.CREATE, "doctors", d.id, new_data=doctor_flat(d))
        return d.id


def update_doctor(doctor_id: str, actor: Profile | None = None, **fields) -> dict:
    allowed = {"full_name", "specialty", "phone", "email", "color", "is_active"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Campos no válidos: {', '.join(sorted(unknown))}")

    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NotFoundError("Doctor no encontrado.")
        old = doctor_flat(d)
        if "full_name" in fields:
            fields["full_name"] = _required(fields["full_name"], "El nombre del doctor es obligatorio.")
        if "phone" in fields:
            fields["phone"] = normalize_phone(fields["phone"])
        for k, v in fields.items():
            setattr(d, k, v)
        new = doctor_flat(d)
        audit.record(s, actor, AuditAction.UPDATE, "doctors", d.id, old_data=old, new_data=new)
        return new


def list_doctors(active_only: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(Doctor).order_by(Doctor.full_name)
        if active_only:
            q = q.where(Doctor.is_active.is_(True))
        return [doctor_flat(d) for d in s.scalars(q)]


# =========================
# Tratamientos
# =========================
def treatment_flat(t: Treatment) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "description": t.description,
        "category": t.category,
        "base_price": t.base_price,
        "duration_minutes": t.duration_minutes,
        "is_active": t.is_active,
    }


def _check_treatment(category: str, base_price: Decimal, duration_minutes: int) -> None:
    if category not in TREATMENT_CATEGORIES:
        raise ValidationError("Categoría de tratamiento no válida.")
    if base_price < 0:
        raise ValidationError("El precio no puede ser negativo.")
    if duration_minutes <= 0:
        raise ValidationError("La duración debe ser mayor a cero.")


def create_treatment(
    name: str,
    category: str,
    base_price: Decimal,
    duration_minutes: int = 30,
    description: str | None = None,
    actor: Profile | None = None,
) -> str:
    name = _required(name, "El nombre del tratamiento es obligatorio.")
    _check_treatment(category, base_price, duration_minutes)
    with db_session() as s:
        t = Treatment(
            name=name,
            category=category,
            base_price=base_price,
            duration_minutes=duration_minutes,
            description=description,
        )
        s.add(t)
        s.flush()
        audit.record(s, actor, AuditAction.CREATE, "treatments", t.id, new_data=treatment_flat(t))
        return t.id


def update_treatment(treatment_id: str, actor: Profile | None = None, **fields) -> dict:
    with db_session() as s:
        t = s.get(Treatment, treatment_id)
        if not t:
            raise NotFoundError("Tratamiento no encontrado.")
        old = treatment_flat(t)
        for k in ("name", "description", "category", "base_price", "duration_minutes", "is_active"):
            if k in fields and fields[k] is not None:
                setattr(t, k, fields[k])
        t.name = _required(t.name, "El nombre del tratamiento es obligatorio.")
        _check_treatment(t.category, t.base_price, t.duration_minutes)
        new = treatment_flat(t)
        audit.record(s, actor, AuditAction.UPDATE, "treatments", t.id, old_data=old, new_data=new)
        return new


def delete_treatment(treatment_id: str, actor: Profile | None = None) -> bool:
    """Baja lógica: los pagos y citas históricos siguen apuntando al tratamiento."""
    with db_session() as s:
        t = s.get(Treatment, treatment_id)
        if not t or not t.is_active:
            return False
        t.is_active = False
        audit.record(s, actor, AuditAction.DELETE, "treatments", t.id, old_data=treatment_flat(t))
        return True


def list_treatments(category: str | None = None, active_only: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(Treatment).order_by(Treatment.category, Treatment.name)
        if active_only:
            q = q.where(Treatment.is_active.is_(True))
        if category:
            q = q.where(Treatment.category == category)
        return [treatment_flat(t) for t in s.scalars(q)]


# =========================
# Agenda
# =========================
def _doctor_busy(s, doctor_id: str, start: datetime, end: datetime, exclude_id: str | None = None) -> bool:
    """Solape [start, end) con citas no canceladas del mismo doctor."""
    q = (
        select(Appointment.id)
        .where(
            and_(
                Appointment.doctor_id == doctor_id,
                Appointment.status != AppointmentStatus.CANCELLED,
                Appointment.start_time < end,
                Appointment.end_time > start,
            )
        )
        .limit(1)
    )
    if exclude_id:
        q = q.where(Appointment.id != exclude_id)
    return s.execute(q).first() is not None


def create_appointment(
    patient_id: str,
    start: datetime,
    end: datetime,
    title: str,
    doctor_id: str | None = None,
    treatment_id: str | None = None,
    description: str | None = None,
    status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    actor: Profile | None = None,
) -> str:
    """
    Use case: agendar cita.
    - la hora de fin debe ser posterior al inicio
    - el doctor no puede tener dos citas encimadas
    """
    title = _required(title, "El título de la cita es obligatorio.")
    if end <= start:
        raise ValidationError("La hora de fin debe ser posterior a la de inicio.")

    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Paciente no encontrado.")
        if doctor_id:
            if not s.get(Doctor, doctor_id):
                raise NotFoundError("Doctor no encontrado.")
            if _doctor_busy(s, doctor_id, start, end):
                raise ConflictError("El doctor ya tiene una cita en ese horario.")

        a = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            treatment_id=treatment_id,
            title=title,
            description=description,
            start_time=start,
            end_time=end,
            status=status,
            created_by=actor.id if actor else None,
        )
        s.add(a)
        s.flush()
        audit.record(s, actor, AuditAction.CREATE, "appointments", a.id, new_data={"start": start, "doctor_id": doctor_id})
        return a.id


def set_appointment_status(appointment_id: str, status: AppointmentStatus, actor: Profile | None = None) -> bool:
    with db_session() as s:
        a = s.get(Appointment, appointment_id)
        if not a:
            return False
        if a.status == status:
            return True
        # reactivar una cita cancelada vuelve a ocupar el horario del doctor
        if a.status == AppointmentStatus.CANCELLED and a.doctor_id:
            if _doctor_busy(s, a.doctor_id, a.start_time, a.end_time, exclude_id=a.id):
                raise ConflictError("El doctor ya tiene una cita en ese horario.")
        old = a.status
        a.status = status
        audit.record(s, actor, AuditAction.UPDATE, "appointments", a.id, old_data={"status": old}, new_data={"status": status})
        return True


def agenda_flat(day: date, doctor_id: str | None = None) -> list[dict]:
    """Citas del día (incluye canceladas, la UI las tacha)."""
    start_day, end_day = _day_range(day)

    with db_session() as s:
        q = (
            select(
                Appointment.id,
                Appointment.title,
                Appointment.start_time,
                Appointment.end_time,
                Appointment.status,
                Appointment.description,
                Appointment.doctor_id,
                Patient.id.label("patient_id"),
                Patient.first_name,
                Patient.last_name,
                Patient.phone,
                Doctor.full_name.label("doctor_name"),
                Treatment.name.label("treatment_name"),
            )
            .join(Patient, Patient.id == Appointment.patient_id)
            .outerjoin(Doctor, Doctor.id == Appointment.doctor_id)
            .outerjoin(Treatment, Treatment.id == Appointment.treatment_id)
            .where(and_(Appointment.start_time >= start_day, Appointment.start_time < end_day))
            .order_by(Appointment.start_time.asc())
        )
        if doctor_id:
            q = q.where(Appointment.doctor_id == doctor_id)

        return [
            {
                "id": r.id,
                "title": r.title,
                "start": r.start_time.strftime("%H:%M"),
                "end": r.end_time.strftime("%H:%M"),
                "status": r.status.value,
                "description": r.description,
                "patient_id": r.patient_id,
                "patient": f"{r.first_name} {r.last_name}",
                "patient_phone": r.phone,
                "doctor_id": r.doctor_id,
                "doctor": r.doctor_name,
                "treatment": r.treatment_name,
            }
            for r in s.execute(q).all()
        ]


def appointment_reminder_link(appointment_id: str) -> str | None:
    with db_session() as s:
        a = s.get(Appointment, appointment_id)
        if not a:
            return None
        message = appointment_reminder(
            patient_name=a.patient.first_name,
            date=a.start_time.strftime("%d/%m/%Y"),
            time=a.start_time.strftime("%H:%M"),
            doctor_name=a.doctor.full_name if a.doctor else "Por asignar",
            treatment=a.treatment.name if a.treatment else a.title,
        )
        phone = f"52{a.patient.phone}" if a.patient.phone else None
        return whatsapp_link(message, phone)
