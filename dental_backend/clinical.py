"""
Expediente clínico: alta de paciente con ficha, anamnesis, odontograma,
notas de evolución, recetas y presupuestos.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select

from . import audit
from .auth_models import AuditAction, Profile
from .db import db_session
from .exceptions import NotFoundError, ValidationError
from .models import (
    Budget,
    BudgetItem,
    BudgetStatus,
    EvolutionNote,
    OdontogramEntry,
    Patient,
    PatientRecord,
    PatientSource,
    Prescription,
    PrescriptionItem,
    ToothCondition,
)
from .services import PatientData, create_patient, normalize_phone

logger = logging.getLogger(__name__)

# Numeración FDI, dentición permanente
FDI_TEETH = frozenset(q * 10 + n for q in (1, 2, 3, 4) for n in range(1, 9))

ANAMNESIS_FIELDS = ("allergies", "current_medications", "chronic_conditions", "previous_surgeries", "is_pregnant", "notes")


def _patient_or_raise(s, patient_id: str) -> Patient:
    p = s.get(Patient, patient_id)
    if not p:
        raise NotFoundError("Paciente no encontrado.")
    return p


# =========================
# Fuentes de referencia
# =========================
def list_sources(active_only: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(PatientSource).order_by(PatientSource.name)
        if active_only:
            q = q.where(PatientSource.is_active.is_(True))
        return [{"id": src.id, "name": src.name} for src in s.scalars(q)]


# =========================
# Alta con ficha
# =========================
@dataclass(frozen=True)
class IntakeData:
    patient: PatientData
    source_id: int | None
    occupation: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None


def register_intake(data: IntakeData, actor: Profile | None = None) -> str:
    """Alta de recepción: paciente + ficha. La fuente de referencia es obligatoria."""
    if data.source_id is None:
        raise ValidationError("Selecciona cómo nos conoció el paciente.")
    emergency_phone = normalize_phone(data.emergency_contact_phone)

    with db_session() as s:
        if not s.get(PatientSource, data.source_id):
            raise ValidationError("Fuente de referencia no válida.")

    patient_id = create_patient(data.patient, actor=actor)
    with db_session() as s:
        s.add(
            PatientRecord(
                patient_id=patient_id,
                source_id=data.source_id,
                occupation=data.occupation,
                emergency_contact_name=data.emergency_contact_name,
                emergency_contact_phone=emergency_phone,
            )
        )
    logger.info("Alta de paciente %s con ficha", patient_id)
    return patient_id


# =========================
# Anamnesis
# =========================
def get_anamnesis(patient_id: str) -> dict | None:
    with db_session() as s:
        p = s.get(Patient, patient_id)
        if not p:
            return None
        r = p.record
        out = {"patient_id": patient_id, "source": r.source.name if r and r.source else None}
        for name in ANAMNESIS_FIELDS:
            out[name] = getattr(r, name) if r else (False if name == "is_pregnant" else None)
        return out


def update_anamnesis(patient_id: str, actor: Profile | None = None, **fields) -> dict:
    unknown = set(fields) - set(ANAMNESIS_FIELDS)
    if unknown:
        raise ValidationError(f"Campos no válidos: {', '.join(sorted(unknown))}")

    with db_session() as s:
        p = _patient_or_raise(s, patient_id)
        r = p.record
        if r is None:
            r = PatientRecord(patient_id=patient_id)
            s.add(r)
        old = {k: getattr(r, k) for k in fields}
        for k, v in fields.items():
            setattr(r, k, bool(v) if k == "is_pregnant" else v)
        audit.record(s, actor, AuditAction.UPDATE, "patient_records", patient_id, old_data=old, new_data=fields)

    return get_anamnesis(patient_id)


# =========================
# Odontograma
# =========================
def set_tooth(
    patient_id: str,
    tooth_number: int,
    condition: ToothCondition | str,
    surfaces: str | None = None,
    notes: str | None = None,
    actor: Profile | None = None,
) -> None:
    """Upsert de una pieza: una sola fila por (paciente, diente)."""
    if tooth_number not in FDI_TEETH:
        raise ValidationError(f"Número de diente no válido: {tooth_number}.")
    try:
        condition = ToothCondition(condition)
    except ValueError:
        raise ValidationError(f"Condición no válida: {condition}.") from None

    with db_session() as s:
        _patient_or_raise(s, patient_id)
        row = s.scalar(
            select(OdontogramEntry).where(
                OdontogramEntry.patient_id == patient_id,
                OdontogramEntry.tooth_number == tooth_number,
            )
        )
        if row is None:
            row = OdontogramEntry(patient_id=patient_id, tooth_number=tooth_number)
            s.add(row)
        row.condition = condition
        row.surfaces = (surfaces or "").upper() or None
        row.notes = notes
        row.updated_by = actor.id if actor else None


def get_odontogram(patient_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(OdontogramEntry)
            .where(OdontogramEntry.patient_id == patient_id)
            .order_by(OdontogramEntry.tooth_number)
        )
        return [
            {
                "tooth_number": r.tooth_number,
                "condition": r.condition.value,
                "surfaces": r.surfaces,
                "notes": r.notes,
                "updated_at": r.updated_at.isoformat(),
            }
            for r in rows
        ]


# =========================
# Notas de evolución
# =========================
def add_evolution_note(
    patient_id: str, note: str, doctor_id: str | None = None, actor: Profile | None = None
) -> int:
    note = (note or "").strip()
    if not note:
        raise ValidationError("La nota no puede estar vacía.")
    with db_session() as s:
        _patient_or_raise(s, patient_id)
        n = EvolutionNote(patient_id=patient_id, doctor_id=doctor_id, user_id=actor.id if actor else None, note=note)
        s.add(n)
        s.flush()
        return n.id


def list_evolution_notes(patient_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(EvolutionNote)
            .where(EvolutionNote.patient_id == patient_id)
            .order_by(EvolutionNote.note_date.desc(), EvolutionNote.id.desc())
        )
        return [
            {
                "id": n.id,
                "note": n.note,
                "doctor_id": n.doctor_id,
                "user_id": n.user_id,
                "note_date": n.note_date.isoformat(),
            }
            for n in rows
        ]


def delete_evolution_note(note_id: int, actor: Profile | None = None) -> bool:
    with db_session() as s:
        n = s.get(EvolutionNote, note_id)
        if not n:
            return False
        audit.record(s, actor, AuditAction.DELETE, "evolution_notes", str(n.id), old_data={"note": n.note})
        s.delete(n)
        return True


# =========================
# Recetas
# =========================
@dataclass(frozen=True)
class MedicationLine:
    medication: str
    dosage: str | None = None
    frequency: str | None = None
    duration: str | None = None


def create_prescription(
    patient_id: str,
    items: list[MedicationLine],
    doctor_id: str | None = None,
    diagnosis: str | None = None,
    instructions: str | None = None,
    actor: Profile | None = None,
) -> str:
    lines = [i for i in items if (i.medication or "").strip()]
    if not lines:
        raise ValidationError("Agrega al menos un medicamento.")

    with db_session() as s:
        _patient_or_raise(s, patient_id)
        rx = Prescription(
            patient_id=patient_id,
            doctor_id=doctor_id,
            diagnosis=diagnosis,
            instructions=instructions,
            created_by=actor.id if actor else None,
        )
        rx.items = [
            PrescriptionItem(
                medication=i.medication.strip(),
                dosage=i.dosage,
                frequency=i.frequency,
                duration=i.duration,
            )
            for i in lines
        ]
        s.add(rx)
        s.flush()
        audit.record(s, actor, AuditAction.CREATE, "prescriptions", rx.id, new_data={"items": len(lines)})
        return rx.id


def list_prescriptions(patient_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(Prescription).where(Prescription.patient_id == patient_id).order_by(Prescription.created_at.desc())
        )
        return [
            {
                "id": rx.id,
                "doctor_id": rx.doctor_id,
                "diagnosis": rx.diagnosis,
                "instructions": rx.instructions,
                "created_at": rx.created_at.isoformat(),
                "items": [
                    {"medication": i.medication, "dosage": i.dosage, "frequency": i.frequency, "duration": i.duration}
                    for i in rx.items
                ],
            }
            for rx in rows
        ]


# =========================
# Presupuestos
# =========================
@dataclass(frozen=True)
class BudgetLine:
    description: str
    unit_price: Decimal
    quantity: int = 1
    treatment_id: str | None = None


@dataclass(frozen=True)
class BudgetDraft:
    patient_id: str
    items: list[BudgetLine] = field(default_factory=list)
    doctor_id: str | None = None
    notes: str | None = None


def _budget_flat(b: Budget) -> dict:
    return {
        "id": b.id,
        "patient_id": b.patient_id,
        "doctor_id": b.doctor_id,
        "status": b.status.value,
        "notes": b.notes,
        "created_at": b.created_at.isoformat(),
        "total": b.total,
        "items": [
            {
                "treatment_id": i.treatment_id,
                "description": i.description,
                "quantity": i.quantity,
                "unit_price": i.unit_price,
                "subtotal": i.quantity * i.unit_price,
            }
            for i in b.items
        ],
    }


def create_budget(draft: BudgetDraft, actor: Profile | None = None) -> dict:
    if not draft.items:
        raise ValidationError("El presupuesto necesita al menos un concepto.")
    for i in draft.items:
        if not (i.description or "").strip():
            raise ValidationError("Cada concepto necesita una descripción.")
        if i.quantity <= 0:
            raise ValidationError("La cantidad debe ser mayor a cero.")
        if i.unit_price < 0:
            raise ValidationError("El precio no puede ser negativo.")

    with db_session() as s:
        _patient_or_raise(s, draft.patient_id)
        b = Budget(
            patient_id=draft.patient_id,
            doctor_id=draft.doctor_id,
            notes=draft.notes,
            created_by=actor.id if actor else None,
        )
        b.items = [
            BudgetItem(
                treatment_id=i.treatment_id,
                description=i.description.strip(),
                quantity=i.quantity,
                unit_price=i.unit_price,
            )
            for i in draft.items
        ]
        s.add(b)
        s.flush()
        audit.record(s, actor, AuditAction.CREATE, "budgets", b.id, new_data={"total": b.total})
        return _budget_flat(b)


def set_budget_status(budget_id: str, status: BudgetStatus, actor: Profile | None = None) -> dict:
    with db_session() as s:
        b = s.get(Budget, budget_id)
        if not b:
            raise NotFoundError("Presupuesto no encontrado.")
        old = b.status
        b.status = status
        audit.record(s, actor, AuditAction.UPDATE, "budgets", b.id, old_data={"status": old}, new_data={"status": status})
        return _budget_flat(b)


def list_budgets(patient_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(select(Budget).where(Budget.patient_id == patient_id).order_by(Budget.created_at.desc()))
        return [_budget_flat(b) for b in rows]
