from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from dental_backend import audit, billing, cash_register, clinical, inventory, reports, services, staff_service
from dental_backend.auth_models import AuditPurpose, Profile, Role
from dental_backend.auth_security import create_access_token, get_claims
from dental_backend.auth_service import (
    ROLE_PERMISSIONS,
    active_audit_session,
    authenticate,
    change_password,
    get_profile_by_id,
    has_permission,
    is_token_revoked,
    profile_flat,
    sign_out,
    sign_up,
)
from dental_backend.config import configure_logging, get_settings
from dental_backend.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from dental_backend.models import (
    AppointmentStatus,
    BudgetStatus,
    CashRegisterStatus,
    CommissionStatus,
    ExpectedSource,
    PaymentMethod,
    PaymentStatus,
    StockMovement,
)
from dental_backend.realtime import broker
from dental_backend.seed import seed_base

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

# Canales con feed en tiempo real
REALTIME_CHANNELS = {cash_register.CHANNEL: "can_view_cash_registers", billing.CHANNEL: "can_view_payments"}

# Rutas que un auditor puede llamar aunque no sean GET
AUDITOR_WRITE_EXEMPT = {"/api/auth/logout"}

STAFF = (Role.DOCTOR, Role.RECEPTIONIST)

app = FastAPI(title="Denttia API", version="1.0.0")


# Startup

@app.on_event("startup")
def startup() -> None:
    configure_logging()
    # Crea tablas (incluidos perfiles/auditoría) y seed base (idempotente)
    services.init_db()
    seed_base()


# Errores de dominio -> HTTP

def _error(code: int) -> Callable[..., Any]:
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.warning("%s %s -> %d: %s", request.method, request.url.path, code, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc)})
    return handler


app.add_exception_handler(ValidationError, _error(status.HTTP_400_BAD_REQUEST))
app.add_exception_handler(ConflictError, _error(status.HTTP_409_CONFLICT))
app.add_exception_handler(InvalidTransitionError, _error(status.HTTP_409_CONFLICT))
app.add_exception_handler(NotFoundError, _error(status.HTTP_404_NOT_FOUND))
app.add_exception_handler(PersistenceError, _error(status.HTTP_500_INTERNAL_SERVER_ERROR))
app.add_exception_handler(ValueError, _error(status.HTTP_400_BAD_REQUEST))


# Dependencias: API key + auth

def require_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    expected = get_settings().api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API key inválida")


def get_token_claims(token: str = Depends(oauth2_scheme)) -> dict[str, Any]:
    # elimina espacios / comillas accidentales
    token = token.strip().strip('"').strip("'")

    claims = get_claims(token)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token inválido")
    if is_token_revoked(claims.get("jti")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sesión cerrada")
    return claims


def get_current_user(request: Request, claims: dict[str, Any] = Depends(get_token_claims)) -> Profile:
    u = get_profile_by_id(claims["sub"])
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Usuario no válido")

    request.state.audit_session = None
    if u.role == Role.AUDITOR:
        sess = active_audit_session(u.id)
        if sess is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sesión de auditoría expirada o revocada")
        if request.method != "GET" and request.url.path not in AUDITOR_WRITE_EXEMPT:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Acceso de solo lectura")
        request.state.audit_session = sess
    return u


def allow(*roles: Role, auditor_flag: str | None = None) -> Callable[..., Profile]:
    """
    Admin pasa siempre; los roles indicados también.
    Un auditor entra solo si su sesión tiene el permiso `auditor_flag`.
    """
    def dependency(request: Request, user: Profile = Depends(get_current_user)) -> Profile:
        if user.role == Role.ADMIN or user.role in roles:
            return user
        if user.role == Role.AUDITOR and auditor_flag and getattr(request.state.audit_session, auditor_flag, False):
            audit.log_read(user, request.url.path)
            return user
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tienes permiso para esta sección")
    return dependency


admin_only = allow()

api = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])


# Esquemas Auth

class RegisterIn(BaseModel):
    email: str
    password: str
    first_name: str | None = None
    last_name: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    must_change_password: bool = False


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


# Esquemas personal / auditoría

class StaffCreateIn(BaseModel):
    email: str
    first_name: str
    last_name: str
    role: Role = Role.RECEPTIONIST


class RoleIn(BaseModel):
    role: Role


class ActiveIn(BaseModel):
    is_active: bool


class AuditSessionIn(BaseModel):
    auditor_name: str
    auditor_email: str
    auditor_company: str | None = None
    purpose: AuditPurpose = AuditPurpose.MIGRATION
    duration_hours: int = Field(default=staff_service.DEFAULT_AUDIT_HOURS, gt=0)
    can_view_patients: bool = True
    can_view_appointments: bool = True
    can_view_treatments: bool = True
    can_view_payments: bool = True
    can_view_cash_registers: bool = True
    can_export_data: bool = False


class ReasonIn(BaseModel):
    reason: str | None = None


# Esquemas pacientes / expediente

class PatientIn(BaseModel):
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    address: str | None = None
    medical_history: str | None = None

    def to_data(self) -> services.PatientData:
        return services.PatientData(**self.model_dump())


class IntakeIn(PatientIn):
    source_id: int | None = None
    occupation: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None


class AnamnesisIn(BaseModel):
    allergies: str | None = None
    current_medications: str | None = None
    chronic_conditions: str | None = None
    previous_surgeries: str | None = None
    is_pregnant: bool | None = None
    notes: str | None = None


class ToothIn(BaseModel):
    condition: str
    surfaces: str | None = None
    notes: str | None = None


class NoteIn(BaseModel):
    note: str
    doctor_id: str | None = None


class MedicationIn(BaseModel):
    medication: str
    dosage: str | None = None
    frequency: str | None = None
    duration: str | None = None


class PrescriptionIn(BaseModel):
    items: list[MedicationIn]
    doctor_id: str | None = None
    diagnosis: str | None = None
    instructions: str | None = None


class BudgetItemIn(BaseModel):
    description: str
    unit_price: Decimal
    quantity: int = 1
    treatment_id: str | None = None


class BudgetIn(BaseModel):
    items: list[BudgetItemIn]
    doctor_id: str | None = None
    notes: str | None = None


class BudgetStatusIn(BaseModel):
    status: BudgetStatus


# Esquemas agenda

class DoctorIn(BaseModel):
    full_name: str
    specialty: str | None = None
    phone: str | None = None
    email: str | None = None
    color: str | None = None


class DoctorPatchIn(BaseModel):
    full_name: str | None = None
    specialty: str | None = None
    phone: str | None = None
    email: str | None = None
    color: str | None = None
    is_active: bool | None = None


class CommissionIn(BaseModel):
    percentage: Decimal


class TreatmentIn(BaseModel):
    name: str
    category: str
    base_price: Decimal
    duration_minutes: int = 30
    description: str | None = None


class TreatmentPatchIn(BaseModel):
    name: str | None = None
    category: str | None = None
    base_price: Decimal | None = None
    duration_minutes: int | None = None
    description: str | None = None
    is_active: bool | None = None


class AppointmentIn(BaseModel):
    patient_id: str
    start: datetime
    end: datetime
    title: str
    doctor_id: str | None = None
    treatment_id: str | None = None
    description: str | None = None


class AppointmentStatusIn(BaseModel):
    status: AppointmentStatus


# Esquemas pagos / inventario

class PaymentIn(BaseModel):
    patient_id: str
    amount: Decimal
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.COMPLETED
    appointment_id: str | None = None
    doctor_id: str | None = None
    treatment_id: str | None = None
    notes: str | None = None


class PaymentStatusIn(BaseModel):
    status: PaymentStatus


class InventoryItemIn(BaseModel):
    name: str
    sku: str | None = None
    unit: str = "piezas"
    cost: Decimal = Decimal("0")
    min_stock: Decimal = Decimal("5")


class MovementIn(BaseModel):
    type: StockMovement
    quantity: Decimal
    notes: str | None = None


# Esquemas corte de caja

class ExpenseIn(BaseModel):
    description: str = ""
    amount: Decimal
    category: str = "general"


class WithdrawalIn(BaseModel):
    description: str = ""
    amount: Decimal
    authorized_by: str | None = None


class ShiftIn(BaseModel):
    opening_balance: Decimal | None = None
    services_cash: Decimal = Decimal("0")
    services_card: Decimal = Decimal("0")
    services_transfer: Decimal = Decimal("0")
    products_cash: Decimal = Decimal("0")
    products_card: Decimal = Decimal("0")
    products_transfer: Decimal = Decimal("0")
    other_income: Decimal = Decimal("0")
    other_income_notes: str | None = None
    expenses: list[ExpenseIn] = Field(default_factory=list)
    withdrawals: list[WithdrawalIn] = Field(default_factory=list)

    def to_declaration(self) -> cash_register.ShiftDeclaration:
        data = self.model_dump(exclude={"expenses", "withdrawals"})
        return cash_register.ShiftDeclaration(
            **data,
            expenses=tuple(cash_register.ExpenseLine(**e.model_dump()) for e in self.expenses),
            withdrawals=tuple(cash_register.WithdrawalLine(**w.model_dump()) for w in self.withdrawals),
        )


class ApproveIn(BaseModel):
    source: ExpectedSource = ExpectedSource.SYSTEM
    manual_expected: Decimal | None = None
    notes: str | None = None


class RejectIn(BaseModel):
    notes: str | None = None


# AUTH endpoints

@api.post("/auth/register")
def register(payload: RegisterIn) -> dict[str, Any]:
    user_id = sign_up(payload.email, payload.password, payload.first_name, payload.last_name)
    return {"ok": True, "user_id": user_id}


@api.post("/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = authenticate(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenciales inválidas")

    token = create_access_token(subject=u.id, extra={"email": u.email, "role": u.role.value})
    return TokenOut(access_token=token, must_change_password=u.must_change_password)


@api.get("/auth/session")
def session(request: Request, user: Profile = Depends(get_current_user)) -> dict[str, Any]:
    out = profile_flat(user)
    out["permissions"] = sorted(ROLE_PERMISSIONS.get(user.role, set())) if user.role != Role.ADMIN else ["*"]
    sess = request.state.audit_session
    if sess is not None:
        out["audit_session"] = {
            "id": sess.id,
            "expires_at": sess.expires_at.isoformat(),
            "can_view_patients": sess.can_view_patients,
            "can_view_appointments": sess.can_view_appointments,
            "can_view_treatments": sess.can_view_treatments,
            "can_view_payments": sess.can_view_payments,
            "can_view_cash_registers": sess.can_view_cash_registers,
            "can_export_data": sess.can_export_data,
        }
    return out


@api.post("/auth/logout")
def logout(user: Profile = Depends(get_current_user), claims: dict[str, Any] = Depends(get_token_claims)) -> dict[str, Any]:
    sign_out(user, claims.get("jti"))
    return {"ok": True}


@api.post("/auth/change-password")
def api_change_password(payload: ChangePasswordIn, user: Profile = Depends(get_current_user)) -> dict[str, Any]:
    change_password(user.id, payload.current_password, payload.new_password)
    return {"ok": True}


# Personal y auditoría (admin)

@api.get("/staff")
def api_staff(user: Profile = Depends(admin_only)) -> list[dict]:
    return staff_service.list_profiles()


@api.post("/staff")
def api_create_staff(payload: StaffCreateIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    creds = staff_service.create_staff_user(user, payload.email, payload.first_name, payload.last_name, payload.role)
    return {"ok": True, "user_id": creds.user_id, "email": creds.email, "temp_password": creds.temp_password}


@api.patch("/staff/{user_id}/role")
def api_set_role(user_id: str, payload: RoleIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    staff_service.set_role(user, user_id, payload.role)
    return {"ok": True}


@api.patch("/staff/{user_id}/active")
def api_set_active(user_id: str, payload: ActiveIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    staff_service.set_active(user, user_id, payload.is_active)
    return {"ok": True}


@api.get("/audit-sessions")
def api_audit_sessions(user: Profile = Depends(admin_only)) -> list[dict]:
    return staff_service.list_audit_sessions()


@api.post("/audit-sessions")
def api_create_audit_session(payload: AuditSessionIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    creds = staff_service.create_audit_session(user, **payload.model_dump())
    return {
        "ok": True,
        "session_id": creds.session_id,
        "user_id": creds.user_id,
        "email": creds.email,
        "temp_password": creds.temp_password,
        "expires_at": creds.expires_at,
    }


@api.post("/audit-sessions/{session_id}/revoke")
def api_revoke_audit_session(session_id: str, payload: ReasonIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    staff_service.revoke_audit_session(user, session_id, payload.reason)
    return {"ok": True}


@api.get("/audit-logs")
def api_audit_logs(
    action: str | None = None,
    entity_type: str | None = None,
    limit: int = Query(200, ge=1, le=1000),
    user: Profile = Depends(get_current_user),
) -> list[dict]:
    if not has_permission(user, "view_audit_logs"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tienes permiso para esta sección")
    return audit.list_logs(action=action, entity_type=entity_type, limit=limit)


# Pacientes

@api.get("/patients")
def api_patients(q: str | None = None, user: Profile = Depends(allow(*STAFF, auditor_flag="can_view_patients"))) -> list[dict]:
    return services.search_patients(q)


@api.post("/patients")
def api_create_patient(payload: PatientIn, user: Profile = Depends(allow(*STAFF))) -> dict[str, Any]:
    pid = services.create_patient(payload.to_data(), actor=user)
    return {"ok": True, "patient_id": pid}


@api.post("/patients/intake")
def api_intake(payload: IntakeIn, user: Profile = Depends(allow(*STAFF))) -> dict[str, Any]:
    data = clinical.IntakeData(
        patient=services.PatientData(**payload.model_dump(include=set(PatientIn.model_fields))),
        source_id=payload.source_id,
        occupation=payload.occupation,
        emergency_contact_name=payload.emergency_contact_name,
        emergency_contact_phone=payload.emergency_contact_phone,
    )
    return {"ok": True, "patient_id": clinical.register_intake(data, actor=user)}


@api.get("/patients/birthdays")
def api_birthdays(days: int = Query(7, ge=0, le=60), user: Profile = Depends(allow(*STAFF))) -> list[dict]:
    return services.upcoming_birthdays(days)


@api.get("/patient-sources")
def api_sources(user: Profile = Depends(allow(*STAFF))) -> list[dict]:
    return clinical.list_sources()


@api.get("/patients/{patient_id}")
def api_patient(patient_id: str, user: Profile = Depends(allow(*STAFF, auditor_flag="can_view_patients"))) -> dict:
    p = services.get_patient(patient_id)
    if not p:
        raise HTTPException(status_code=404, detail="Paciente no encontrado")
    return p


@api.put("/patients/{patient_id}")
def api_update_patient(patient_id: str, payload: PatientIn, user: Profile = Depends(allow(*STAFF))) -> dict:
    return services.update_patient(patient_id, payload.to_data(), actor=user)


@api.delete("/patients/{patient_id}")
def api_delete_patient(patient_id: str, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    if not services.delete_patient(patient_id, actor=user):
        raise HTTPException(status_code=404, detail="Paciente no encontrado")
    return {"ok": True}


@api.get("/patients/{patient_id}/anamnesis")
def api_anamnesis(patient_id: str, user: Profile = Depends(allow(*STAFF, auditor_flag="can_view_patients"))) -> dict:
    a = clinical.get_anamnesis(patient_id)
    if a is None:
        raise HTTPException(status_code=404, detail="Paciente no encontrado")
    return a


@api.put("/patients/{patient_id}/anamnesis")
def api_update_anamnesis(patient_id: str, payload: AnamnesisIn, user: Profile = Depends(allow(*STAFF))) -> dict:
    return clinical.update_anamnesis(patient_id, actor=user, **payload.model_dump(exclude_unset=True))


@api.get("/patients/{patient_id}/odontogram")
def api_odontogram(patient_id: str, user: Profile = Depends(allow(Role.DOCTOR, auditor_flag="can_view_patients"))) -> list[dict]:
    return clinical.get_odontogram(patient_id)


@api.put("/patients/{patient_id}/odontogram/{tooth_number}")
def api_set_tooth(patient_id: str, tooth_number: int, payload: ToothIn, user: Profile = Depends(allow(Role.DOCTOR))) -> dict:
    clinical.set_tooth(patient_id, tooth_number, payload.condition, payload.surfaces, payload.notes, actor=user)
    return {"ok": True}


@api.get("/patients/{patient_id}/notes")
def api_notes(patient_id: str, user: Profile = Depends(allow(Role.DOCTOR, auditor_flag="can_view_patients"))) -> list[dict]:
    return clinical.list_evolution_notes(patient_id)


@api.post("/patients/{patient_id}/notes")
def api_add_note(patient_id: str, payload: NoteIn, user: Profile = Depends(allow(Role.DOCTOR))) -> dict[str, Any]:
    return {"ok": True, "note_id": clinical.add_evolution_note(patient_id, payload.note, payload.doctor_id, actor=user)}


@api.delete("/notes/{note_id}")
def api_delete_note(note_id: int, user: Profile = Depends(allow(Role.DOCTOR))) -> dict[str, Any]:
    if not clinical.delete_evolution_note(note_id, actor=user):
        raise HTTPException(status_code=404, detail="Nota no encontrada")
    return {"ok": True}


@api.get("/patients/{patient_id}/prescriptions")
def api_prescriptions(patient_id: str, user: Profile = Depends(allow(Role.DOCTOR))) -> list[dict]:
    return clinical.list_prescriptions(patient_id)


@api.post("/patients/{patient_id}/prescriptions")
def api_create_prescription(patient_id: str, payload: PrescriptionIn, user: Profile = Depends(allow(Role.DOCTOR))) -> dict[str, Any]:
    rx_id = clinical.create_prescription(
        patient_id,
        [clinical.MedicationLine(**i.model_dump()) for i in payload.items],
        doctor_id=payload.doctor_id,
        diagnosis=payload.diagnosis,
        instructions=payload.instructions,
        actor=user,
    )
    return {"ok": True, "prescription_id": rx_id}


@api.get("/patients/{patient_id}/budgets")
def api_budgets(patient_id: str, user: Profile = Depends(allow(*STAFF))) -> list[dict]:
    return clinical.list_budgets(patient_id)


@api.post("/patients/{patient_id}/budgets")
def api_create_budget(patient_id: str, payload: BudgetIn, user: Profile = Depends(allow(Role.DOCTOR))) -> dict:
    draft = clinical.BudgetDraft(
        patient_id=patient_id,
        items=[clinical.BudgetLine(**i.model_dump()) for i in payload.items],
        doctor_id=payload.doctor_id,
        notes=payload.notes,
    )
    return clinical.create_budget(draft, actor=user)


@api.patch("/budgets/{budget_id}/status")
def api_budget_status(budget_id: str, payload: BudgetStatusIn, user: Profile = Depends(allow(*STAFF))) -> dict:
    return clinical.set_budget_status(budget_id, payload.status, actor=user)


# Doctores y tratamientos

@api.get("/doctors")
def api_doctors(active_only: bool = True, user: Profile = Depends(get_current_user)) -> list[dict]:
    return services.list_doctors(active_only)


@api.post("/doctors")
def api_create_doctor(payload: DoctorIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    return {"ok": True, "doctor_id": services.create_doctor(**payload.model_dump(), actor=user)}


@api.patch("/doctors/{doctor_id}")
def api_update_doctor(doctor_id: str, payload: DoctorPatchIn, user: Profile = Depends(admin_only)) -> dict:
    return services.update_doctor(doctor_id, actor=user, **payload.model_dump(exclude_unset=True))


@api.put("/doctors/{doctor_id}/commission")
def api_set_commission(doctor_id: str, payload: CommissionIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    return {"ok": True, "percentage": billing.set_commission(doctor_id, payload.percentage, actor=user)}


@api.get("/treatments")
def api_treatments(category: str | None = None, user: Profile = Depends(allow(*STAFF, auditor_flag="can_view_treatments"))) -> list[dict]:
    return services.list_treatments(category)


@api.post("/treatments")
def api_create_treatment(payload: TreatmentIn, user: Profile = Depends(allow(Role.DOCTOR))) -> dict[str, Any]:
    return {"ok": True, "treatment_id": services.create_treatment(**payload.model_dump(), actor=user)}


@api.patch("/treatments/{treatment_id}")
def api_update_treatment(treatment_id: str, payload: TreatmentPatchIn, user: Profile = Depends(allow(Role.DOCTOR))) -> dict:
    return services.update_treatment(treatment_id, actor=user, **payload.model_dump(exclude_unset=True))


@api.delete("/treatments/{treatment_id}")
def api_delete_treatment(treatment_id: str, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    if not services.delete_treatment(treatment_id, actor=user):
        raise HTTPException(status_code=404, detail="Tratamiento no encontrado")
    return {"ok": True}


# Agenda

@api.get("/agenda")
def api_agenda(
    day: date = Query(...),
    doctor_id: str | None = None,
    user: Profile = Depends(allow(*STAFF, auditor_flag="can_view_appointments")),
) -> list[dict]:
    return services.agenda_flat(day, doctor_id)


@api.post("/appointments")
def api_create_appointment(payload: AppointmentIn, user: Profile = Depends(allow(*STAFF))) -> dict[str, Any]:
    appt_id = services.create_appointment(**payload.model_dump(), actor=user)
    return {"ok": True, "appointment_id": appt_id}


@api.patch("/appointments/{appointment_id}/status")
def api_appointment_status(appointment_id: str, payload: AppointmentStatusIn, user: Profile = Depends(allow(*STAFF))) -> dict[str, Any]:
    if not services.set_appointment_status(appointment_id, payload.status, actor=user):
        raise HTTPException(status_code=404, detail="Cita no encontrada")
    return {"ok": True}


@api.get("/appointments/{appointment_id}/reminder")
def api_reminder(appointment_id: str, user: Profile = Depends(allow(*STAFF))) -> dict[str, Any]:
    link = services.appointment_reminder_link(appointment_id)
    if link is None:
        raise HTTPException(status_code=404, detail="Cita no encontrada")
    return {"url": link}


# Pagos, comisiones, finanzas

@api.get("/payments")
def api_payments(
    date_from: date | None = None,
    date_to: date | None = None,
    patient_id: str | None = None,
    user: Profile = Depends(allow(Role.RECEPTIONIST, auditor_flag="can_view_payments")),
) -> list[dict]:
    return billing.list_payments(date_from, date_to, patient_id)


@api.post("/payments")
def api_create_payment(payload: PaymentIn, user: Profile = Depends(allow(Role.RECEPTIONIST))) -> dict[str, Any]:
    return {"ok": True, "payment_id": billing.record_payment(user, **payload.model_dump())}


@api.patch("/payments/{payment_id}/status")
def api_payment_status(payment_id: str, payload: PaymentStatusIn, user: Profile = Depends(allow(Role.RECEPTIONIST))) -> dict:
    return billing.set_payment_status(payment_id, payload.status, actor=user)


@api.get("/finance/summary")
def api_finance_summary(user: Profile = Depends(allow(auditor_flag="can_view_payments"))) -> dict:
    return billing.finance_summary()


@api.get("/commissions")
def api_commissions(
    doctor_id: str | None = None,
    status_: CommissionStatus | None = Query(None, alias="status"),
    user: Profile = Depends(admin_only),
) -> list[dict]:
    return billing.list_commissions(doctor_id, status_)


@api.post("/commissions/{commission_id}/pay")
def api_pay_commission(commission_id: int, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    billing.mark_commission_paid(commission_id, actor=user)
    return {"ok": True}


# Inventario

@api.get("/inventory")
def api_inventory(low_only: bool = False, user: Profile = Depends(allow(*STAFF))) -> list[dict]:
    return inventory.list_items(low_only)


@api.post("/inventory")
def api_create_item(payload: InventoryItemIn, user: Profile = Depends(admin_only)) -> dict[str, Any]:
    return {"ok": True, "item_id": inventory.create_item(**payload.model_dump(), actor=user)}


@api.post("/inventory/{item_id}/movements")
def api_move_stock(item_id: str, payload: MovementIn, user: Profile = Depends(allow(*STAFF))) -> dict:
    return inventory.move_stock(item_id, payload.type, payload.quantity, payload.notes, actor=user)


@api.get("/inventory/{item_id}/movements")
def api_movements(item_id: str, user: Profile = Depends(allow(*STAFF))) -> list[dict]:
    return inventory.list_transactions(item_id)


# Corte de caja: lado cajero

@api.get("/cash-register/current")
def api_current_shift(user: Profile = Depends(allow(Role.RECEPTIONIST))) -> dict[str, Any]:
    reg = cash_register.current_shift(user.id)
    return {"current": cash_register.cashier_view(reg) if reg else None}


@api.post("/cash-register")
def api_submit_shift(payload: ShiftIn, user: Profile = Depends(allow(Role.RECEPTIONIST))) -> dict[str, Any]:
    register_id = cash_register.submit_shift(user, payload.to_declaration())
    return {"ok": True, "register_id": register_id}


# Corte de caja: revisión

@api.get("/cash-registers")
def api_shifts(
    status_: CashRegisterStatus | None = Query(None, alias="status"),
    user_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    user: Profile = Depends(allow(auditor_flag="can_view_cash_registers")),
) -> dict[str, Any]:
    rows = cash_register.list_shifts(status_, user_id, date_from, date_to)
    return {"items": rows, "stats": cash_register.review_stats(rows)}


@api.get("/cash-registers/{register_id}")
def api_shift(register_id: str, user: Profile = Depends(allow(auditor_flag="can_view_cash_registers"))) -> dict:
    reg = cash_register.get_shift(register_id)
    if reg is None:
        raise HTTPException(status_code=404, detail="Corte no encontrado")
    return reg


@api.get("/cash-registers/{register_id}/preview")
def api_preview(
    register_id: str,
    source: ExpectedSource = ExpectedSource.SYSTEM,
    manual_expected: Decimal | None = None,
    user: Profile = Depends(admin_only),
) -> dict[str, Any]:
    p = cash_register.preview_review(register_id, source, manual_expected)
    return {
        "declared": p.declared,
        "expected": p.expected,
        "source": p.source.value,
        "difference": p.difference,
        "label": p.label,
        "is_discrepancy": p.is_discrepancy,
    }


@api.post("/cash-registers/{register_id}/approve")
def api_approve(register_id: str, payload: ApproveIn, user: Profile = Depends(admin_only)) -> dict:
    return cash_register.approve_shift(user, register_id, payload.source, payload.manual_expected, payload.notes)


@api.post("/cash-registers/{register_id}/reject")
def api_reject(register_id: str, payload: RejectIn, user: Profile = Depends(admin_only)) -> dict:
    return cash_register.reject_shift(user, register_id, payload.notes)


@api.post("/cash-registers/{register_id}/void")
def api_void(register_id: str, payload: ReasonIn, user: Profile = Depends(admin_only)) -> dict:
    return cash_register.void_shift(user, register_id, payload.reason)


# Reportes

@api.get("/dashboard")
def api_dashboard(user: Profile = Depends(allow(auditor_flag="can_view_payments"))) -> dict:
    return reports.dashboard()


@api.get("/reports")
def api_report(date_from: date = Query(...), date_to: date = Query(...), user: Profile = Depends(admin_only)) -> dict:
    return reports.range_report(date_from, date_to)


app.include_router(api)


# Tiempo real (WebSocket)

def _ws_user(token: str) -> Profile | None:
    claims = get_claims(token)
    if not claims or is_token_revoked(claims.get("jti")):
        return None
    u = get_profile_by_id(claims["sub"])
    if not u or not u.is_active:
        return None
    return u


def _ws_allowed(user: Profile, channel: str) -> bool:
    if user.role != Role.AUDITOR:
        return True
    sess = active_audit_session(user.id)
    return sess is not None and bool(getattr(sess, REALTIME_CHANNELS[channel]))


async def _stop_sender(task: asyncio.Task) -> BaseException | None:
    """Cancela el envío y recoge su resultado; devuelve el error si el envío falló."""
    task.cancel()
    (result,) = await asyncio.gather(task, return_exceptions=True)
    if isinstance(result, asyncio.CancelledError):
        return None
    logger.warning("Feed en tiempo real cortado: %r", result)
    return result


@app.websocket("/ws/{channel}")
async def ws_changes(websocket: WebSocket, channel: str, token: str = "", api_key: str = "") -> None:
    """
    Feed de cambios por tabla. Admin y auditores (con el permiso del canal)
    reciben todo; el resto solo los eventos de sus propios registros.
    """
    expected = get_settings().api_key
    if channel not in REALTIME_CHANNELS or (expected and api_key != expected):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    user = await run_in_threadpool(_ws_user, token)
    if user is None or not await run_in_threadpool(_ws_allowed, user, channel):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    # suscribir antes de aceptar: ningún evento posterior al handshake se pierde
    sees_all = user.role in (Role.ADMIN, Role.AUDITOR)
    sub = broker.subscribe(channel, user_id=None if sees_all else user.id)
    await websocket.accept()

    async def pump() -> None:
        while True:
            await websocket.send_json(await sub.queue.get())

    sender = asyncio.create_task(pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        broker.unsubscribe(sub)
        await _stop_sender(sender)
