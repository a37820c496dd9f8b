from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def now() -> datetime:
    # hora local sin tz: el corte de caja se agrupa por día calendario de la clínica
    return datetime.now()


def value_enum(enum_cls: type[enum.Enum]) -> Enum:
    """Guarda el .value del enum (p. ej. 'pending'), no el nombre del miembro."""
    return Enum(enum_cls, values_callable=lambda members: [m.value for m in members], native_enum=False)


Money = Numeric(12, 2, asdecimal=True)


class AppointmentStatus(enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class PaymentMethod(enum.Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CashRegisterStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    VOIDED = "voided"


class ExpectedSource(enum.Enum):
    SYSTEM = "system"
    MANUAL = "manual"


class ToothCondition(enum.Enum):
    HEALTHY = "healthy"
    CARIES = "caries"
    EXTRACTION = "extraction"
    CROWN = "crown"
    FILLING = "filling"
    ROOT_CANAL = "root_canal"
    IMPLANT = "implant"
    BRIDGE = "bridge"
    MISSING = "missing"


class StockMovement(enum.Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"


class BudgetStatus(enum.Enum):
    DRAFT = "draft"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CommissionStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"


# =========================
# Pacientes y expediente
# =========================
class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    medical_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)

    record: Mapped["PatientRecord | None"] = relationship(
        back_populates="patient", cascade="all, delete-orphan", uselist=False
    )
    appointments: Mapped[list["Appointment"]] = relationship(back_populates="patient", cascade="all, delete-orphan")
    odontogram: Mapped[list["OdontogramEntry"]] = relationship(cascade="all, delete-orphan")
    evolution_notes: Mapped[list["EvolutionNote"]] = relationship(cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class PatientSource(Base):
    """Cómo se enteró el paciente de la clínica (Facebook, recomendación, ...)."""
    __tablename__ = "patient_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PatientRecord(Base):
    """Ficha de ingreso + anamnesis (uno por paciente)."""
    __tablename__ = "patient_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, unique=True)
    source_id: Mapped[int | None] = mapped_column(ForeignKey("patient_sources.id"), nullable=True)

    occupation: Mapped[str | None] = mapped_column(String(120), nullable=True)
    emergency_contact_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # anamnesis
    allergies: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_medications: Mapped[str | None] = mapped_column(Text, nullable=True)
    chronic_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_surgeries: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_pregnant: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now, onupdate=now, nullable=False)

    patient: Mapped["Patient"] = relationship(back_populates="record")
    source: Mapped["PatientSource | None"] = relationship()


class OdontogramEntry(Base):
    __tablename__ = "odontograms"
    __table_args__ = (UniqueConstraint("patient_id", "tooth_number", name="uq_odontogram_tooth"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    tooth_number: Mapped[int] = mapped_column(Integer, nullable=False)
    condition: Mapped[ToothCondition] = mapped_column(
        value_enum(ToothCondition), default=ToothCondition.HEALTHY, nullable=False
    )
    surfaces: Mapped[str | None] = mapped_column(String(20), nullable=True)  # p. ej. "MOD"
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now, onupdate=now, nullable=False)


class EvolutionNote(Base):
    __tablename__ = "evolution_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("doctors.id"), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    note_date: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)


# =========================
# Agenda
# =========================
class Doctor(Base):
    __tablename__ = "doctors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    full_name: Mapped[str] = mapped_column(String(160), nullable=False)
    specialty: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    color: Mapped[str] = mapped_column(String(16), default="#007AFF", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    appointments: Mapped[list["Appointment"]] = relationship(back_populates="doctor")

    def __repr__(self) -> str:
        return f"Doctor({self.full_name}, {self.specialty})"


class Treatment(Base):
    __tablename__ = "treatments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(40), nullable=False, default="Otro")
    base_price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("doctors.id"), nullable=True)
    treatment_id: Mapped[str | None] = mapped_column(ForeignKey("treatments.id"), nullable=True)

    title: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        value_enum(AppointmentStatus), default=AppointmentStatus.SCHEDULED, nullable=False
    )

    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)

    patient: Mapped["Patient"] = relationship(back_populates="appointments")
    doctor: Mapped["Doctor | None"] = relationship(back_populates="appointments")
    treatment: Mapped["Treatment | None"] = relationship()


# =========================
# Cobranza
# =========================
class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    # usuario que registra el cobro (cajero)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    appointment_id: Mapped[str | None] = mapped_column(ForeignKey("appointments.id"), nullable=True)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("doctors.id"), nullable=True)
    treatment_id: Mapped[str | None] = mapped_column(ForeignKey("treatments.id"), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(value_enum(PaymentMethod), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        value_enum(PaymentStatus), default=PaymentStatus.COMPLETED, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    patient: Mapped["Patient"] = relationship()
    treatment: Mapped["Treatment | None"] = relationship()


class CommissionSetting(Base):
    __tablename__ = "commission_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(ForeignKey("doctors.id"), nullable=False, unique=True)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)


class DoctorCommission(Base):
    __tablename__ = "doctor_commissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(ForeignKey("doctors.id"), nullable=False)
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), nullable=False, unique=True)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[CommissionStatus] = mapped_column(
        value_enum(CommissionStatus), default=CommissionStatus.PENDING, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    doctor: Mapped["Doctor"] = relationship()


# =========================
# Corte de caja
# =========================
class CashRegister(Base):
    """
    Corte de caja de un cajero para un día calendario.
    Solo el revisor cambia el estado (pending -> approved | rejected);
    voided = descartado por un administrador.
    """
    __tablename__ = "cash_registers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    register_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    opening_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    services_cash: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    services_card: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    services_transfer: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    products_cash: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    products_card: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    products_transfer: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    other_income: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    other_income_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    expenses: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    cash_withdrawals: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    closing_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # lo que registró el sistema (pagos completados del cajero ese día)
    system_services_cash: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    system_services_card: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    system_services_transfer: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)

    # se fijan en la revisión
    system_total: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    expected_source: Mapped[ExpectedSource | None] = mapped_column(value_enum(ExpectedSource), nullable=True)
    difference: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    status: Mapped[CashRegisterStatus] = mapped_column(
        value_enum(CashRegisterStatus), default=CashRegisterStatus.PENDING, nullable=False
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now, onupdate=now, nullable=False)

    expense_items: Mapped[list["DailyExpense"]] = relationship(
        back_populates="cash_register", cascade="all, delete-orphan"
    )
    withdrawal_items: Mapped[list["CashWithdrawal"]] = relationship(
        back_populates="cash_register", cascade="all, delete-orphan"
    )


class DailyExpense(Base):
    __tablename__ = "daily_expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cash_register_id: Mapped[str] = mapped_column(ForeignKey("cash_registers.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    category: Mapped[str] = mapped_column(String(40), default="general", nullable=False)

    cash_register: Mapped["CashRegister"] = relationship(back_populates="expense_items")


class CashWithdrawal(Base):
    __tablename__ = "cash_withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cash_register_id: Mapped[str] = mapped_column(ForeignKey("cash_registers.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    authorized_by: Mapped[str | None] = mapped_column(String(120), nullable=True)

    cash_register: Mapped["CashRegister"] = relationship(back_populates="withdrawal_items")


# =========================
# Inventario
# =========================
class InventoryItem(Base):
    __tablename__ = "inventory_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(40), nullable=True)
    unit: Mapped[str] = mapped_column(String(20), default="piezas", nullable=False)
    cost: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    current_stock: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    min_stock: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("5"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)

    transactions: Mapped[list["InventoryTransaction"]] = relationship(
        back_populates="item", cascade="all, delete-orphan"
    )


class InventoryTransaction(Base):
    __tablename__ = "inventory_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(ForeignKey("inventory_items.id"), nullable=False)
    type: Mapped[StockMovement] = mapped_column(value_enum(StockMovement), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)

    item: Mapped["InventoryItem"] = relationship(back_populates="transactions")


# =========================
# Recetas y presupuestos
# =========================
class Prescription(Base):
    __tablename__ = "prescriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("doctors.id"), nullable=True)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)

    items: Mapped[list["PrescriptionItem"]] = relationship(
        back_populates="prescription", cascade="all, delete-orphan"
    )


class PrescriptionItem(Base):
    __tablename__ = "prescription_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prescription_id: Mapped[str] = mapped_column(ForeignKey("prescriptions.id"), nullable=False)
    medication: Mapped[str] = mapped_column(String(160), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(80), nullable=True)
    frequency: Mapped[str | None] = mapped_column(String(80), nullable=True)
    duration: Mapped[str | None] = mapped_column(String(80), nullable=True)

    prescription: Mapped["Prescription"] = relationship(back_populates="items")


class Budget(Base):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("doctors.id"), nullable=True)
    status: Mapped[BudgetStatus] = mapped_column(value_enum(BudgetStatus), default=BudgetStatus.DRAFT, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, nullable=False)

    items: Mapped[list["BudgetItem"]] = relationship(back_populates="budget", cascade="all, delete-orphan")

    @property
    def total(self) -> Decimal:
        return sum((i.quantity * i.unit_price for i in self.items), Decimal("0"))


class BudgetItem(Base):
    __tablename__ = "budget_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    budget_id: Mapped[str] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    treatment_id: Mapped[str | None] = mapped_column(ForeignKey("treatments.id"), nullable=True)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    budget: Mapped["Budget"] = relationship(back_populates="items")
