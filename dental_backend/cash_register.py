"""
Corte de caja: envío del cajero y revisión (conciliación) del administrador.

Ciclo de vida:
    pending  -> approved | rejected      (revisor)
    pending | rejected -> voided         (admin, libera el día para un nuevo corte)

Un cajero tiene a lo sumo un corte "vigente" (no voided) por día calendario.
La verificación es previa al insert y no es atómica: dos envíos simultáneos
del mismo cajero pueden pasar ambos.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import audit
from .auth_models import AuditAction, Profile
from .config import DISCREPANCY_TOLERANCE
from .db import db_session
from .exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .models import (
    CashRegister,
    CashRegisterStatus,
    CashWithdrawal,
    DailyExpense,
    ExpectedSource,
    Payment,
    PaymentMethod,
    PaymentStatus,
    now,
)
from .realtime import broker

logger = logging.getLogger(__name__)

CHANNEL = "cash_registers"
ZERO = Decimal("0")

STATUS_LABELS = {
    CashRegisterStatus.PENDING: "Corte Enviado a Revisión",
    CashRegisterStatus.APPROVED: "Corte Aprobado",
    CashRegisterStatus.REJECTED: "Corte Rechazado",
    CashRegisterStatus.VOIDED: "Corte Anulado",
}

_VOIDABLE = {CashRegisterStatus.PENDING, CashRegisterStatus.REJECTED}


# =========================
# DTO
# =========================
@dataclass(frozen=True)
class ExpenseLine:
    description: str
    amount: Decimal
    category: str = "general"


@dataclass(frozen=True)
class WithdrawalLine:
    description: str
    amount: Decimal
    authorized_by: str | None = None


@dataclass(frozen=True)
class ShiftDeclaration:
    """Lo que declara el cajero al cerrar el día."""
    opening_balance: Decimal | None
    services_cash: Decimal = ZERO
    services_card: Decimal = ZERO
    services_transfer: Decimal = ZERO
    products_cash: Decimal = ZERO
    products_card: Decimal = ZERO
    products_transfer: Decimal = ZERO
    other_income: Decimal = ZERO
    other_income_notes: str | None = None
    expenses: tuple[ExpenseLine, ...] = field(default_factory=tuple)
    withdrawals: tuple[WithdrawalLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ShiftTotals:
    total_cash: Decimal
    total_card: Decimal
    total_transfer: Decimal
    total_expenses: Decimal
    total_withdrawals: Decimal
    closing_balance: Decimal

    @property
    def grand_total(self) -> Decimal:
        return self.total_cash + self.total_card + self.total_transfer


@dataclass(frozen=True)
class ReviewPreview:
    declared: Decimal
    expected: Decimal
    source: ExpectedSource
    difference: Decimal
    label: str
    is_discrepancy: bool


# =========================
# Cálculos (puros)
# =========================
def compute_totals(decl: ShiftDeclaration) -> ShiftTotals:
    total_expenses = sum((e.amount for e in decl.expenses), ZERO)
    total_withdrawals = sum((w.amount for w in decl.withdrawals), ZERO)

    total_cash = decl.services_cash + decl.products_cash + decl.other_income
    total_card = decl.services_card + decl.products_card
    total_transfer = decl.services_transfer + decl.products_transfer

    closing = (decl.opening_balance or ZERO) + total_cash - total_expenses - total_withdrawals
    return ShiftTotals(
        total_cash=total_cash,
        total_card=total_card,
        total_transfer=total_transfer,
        total_expenses=total_expenses,
        total_withdrawals=total_withdrawals,
        closing_balance=closing,
    )


def compute_difference(declared_closing: Decimal, expected: Decimal) -> Decimal:
    """Positivo = sobrante, negativo = faltante."""
    return declared_closing - expected


def difference_label(difference: Decimal | None) -> str | None:
    if difference is None:
        return None
    if difference > 0:
        return "sobrante"
    if difference < 0:
        return "faltante"
    return "cuadrado"


def is_discrepancy(difference: Decimal | None, tolerance: Decimal = DISCREPANCY_TOLERANCE) -> bool:
    return difference is not None and abs(difference) > tolerance


def validate_declaration(decl: ShiftDeclaration) -> None:
    if decl.opening_balance is None:
        raise ValidationError("Ingresa el saldo inicial.")

    figures = (
        decl.opening_balance,
        decl.services_cash, decl.services_card, decl.services_transfer,
        decl.products_cash, decl.products_card, decl.products_transfer,
        decl.other_income,
    )
    if any(v < 0 for v in figures):
        raise ValidationError("Los montos no pueden ser negativos.")

    for e in decl.expenses:
        if not (e.description or "").strip():
            raise ValidationError("Cada gasto necesita una descripción.")
        if e.amount <= 0:
            raise ValidationError("El monto de cada gasto debe ser mayor a cero.")
    for w in decl.withdrawals:
        if not (w.description or "").strip():
            raise ValidationError("Cada retiro necesita una descripción.")
        if w.amount <= 0:
            raise ValidationError("El monto de cada retiro debe ser mayor a cero.")


# =========================
# Consultas internas
# =========================
def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _current_row(s: Session, user_id: str, day: date) -> CashRegister | None:
    q = (
        select(CashRegister)
        .where(
            and_(
                CashRegister.user_id == user_id,
                CashRegister.register_date == day,
                CashRegister.status != CashRegisterStatus.VOIDED,
            )
        )
        .order_by(CashRegister.created_at.desc())
        .limit(1)
    )
    return s.scalars(q).first()


def _system_totals(s: Session, user_id: str, day: date) -> dict[PaymentMethod, Decimal]:
    """Pagos completados registrados por el cajero ese día, por método."""
    start, end = _day_bounds(day)
    rows = s.execute(
        select(Payment.payment_method, func.coalesce(func.sum(Payment.amount), 0))
        .where(
            and_(
                Payment.user_id == user_id,
                Payment.status == PaymentStatus.COMPLETED,
                Payment.created_at >= start,
                Payment.created_at < end,
            )
        )
        .group_by(Payment.payment_method)
    ).all()
    totals = {m: ZERO for m in PaymentMethod}
    for method, amount in rows:
        totals[method] = Decimal(str(amount)).quantize(Decimal("0.01"))
    return totals


def _insert_line_items(
    s: Session,
    reg: CashRegister,
    user_id: str,
    expenses: Iterable[ExpenseLine],
    withdrawals: Iterable[WithdrawalLine],
) -> None:
    """Gastos y retiros nacen con el corte; un corte anulado conserva los suyos."""
    s.add_all(
        DailyExpense(
            cash_register_id=reg.id,
            user_id=user_id,
            description=e.description.strip(),
            amount=e.amount,
            category=e.category or "general",
        )
        for e in expenses
    )
    s.add_all(
        CashWithdrawal(
            cash_register_id=reg.id,
            user_id=user_id,
            description=w.description.strip(),
            amount=w.amount,
            authorized_by=(w.authorized_by or "").strip() or None,
        )
        for w in withdrawals
    )


def _get_or_raise(s: Session, register_id: str) -> CashRegister:
    reg = s.get(CashRegister, register_id)
    if not reg:
        raise NotFoundError("Corte no encontrado.")
    return reg


def _ensure_pending(reg: CashRegister) -> None:
    if reg.status != CashRegisterStatus.PENDING:
        raise InvalidTransitionError(f"El corte ya fue revisado (estado: {reg.status.value}).")


def _flat(reg: CashRegister, cashier_name: str | None = None) -> dict:
    return {
        "id": reg.id,
        "user_id": reg.user_id,
        "cashier_name": cashier_name,
        "register_date": reg.register_date.isoformat(),
        "opening_balance": reg.opening_balance,
        "services_cash": reg.services_cash,
        "services_card": reg.services_card,
        "services_transfer": reg.services_transfer,
        "products_cash": reg.products_cash,
        "products_card": reg.products_card,
        "products_transfer": reg.products_transfer,
        "other_income": reg.other_income,
        "other_income_notes": reg.other_income_notes,
        "expenses": reg.expenses,
        "cash_withdrawals": reg.cash_withdrawals,
        "closing_balance": reg.closing_balance,
        "system_services_cash": reg.system_services_cash,
        "system_services_card": reg.system_services_card,
        "system_services_transfer": reg.system_services_transfer,
        "system_total": reg.system_total,
        "expected_source": reg.expected_source.value if reg.expected_source else None,
        "difference": reg.difference,
        "difference_label": difference_label(reg.difference),
        "is_discrepancy": is_discrepancy(reg.difference),
        "status": reg.status.value,
        "admin_notes": reg.admin_notes,
        "reviewed_by": reg.reviewed_by,
        "reviewed_at": reg.reviewed_at.isoformat() if reg.reviewed_at else None,
        "void_reason": reg.void_reason,
        "created_at": reg.created_at.isoformat(),
    }


def cashier_view(reg: CashRegister) -> dict:
    """
    Vista "a ciegas" para recepción: no muestra esperado ni diferencia.
    Las notas del revisor solo aparecen cuando el corte ya fue revisado.
    """
    return {
        "id": reg.id,
        "register_date": reg.register_date.isoformat(),
        "status": reg.status.value,
        "status_label": STATUS_LABELS[reg.status],
        "closing_balance": reg.closing_balance,
        "submitted_at": reg.created_at.isoformat(),
        "admin_notes": reg.admin_notes if reg.status != CashRegisterStatus.PENDING else None,
    }


# =========================
# Lado cajero
# =========================
def current_shift(user_id: str, day: date | None = None) -> CashRegister | None:
    with db_session() as s:
        return _current_row(s, user_id, day or date.today())


def submit_shift(cashier: Profile, decl: ShiftDeclaration, day: date | None = None) -> str:
    """
    Use case: enviar el corte del día.
    - valida la declaración
    - rechaza si ya hay un corte vigente hoy
    - guarda el corte (pending) y después gastos/retiros, en una sola transacción
    - publica el evento en el canal cash_registers
    """
    day = day or date.today()
    validate_declaration(decl)
    totals = compute_totals(decl)

    try:
        with db_session() as s:
            if _current_row(s, cashier.id, day) is not None:
                raise ConflictError("Ya existe un corte para hoy. Espera la revisión del administrador.")

            system = _system_totals(s, cashier.id, day)
            reg = CashRegister(
                user_id=cashier.id,
                register_date=day,
                opening_balance=decl.opening_balance,
                services_cash=decl.services_cash,
                services_card=decl.services_card,
                services_transfer=decl.services_transfer,
                products_cash=decl.products_cash,
                products_card=decl.products_card,
                products_transfer=decl.products_transfer,
                other_income=decl.other_income,
                other_income_notes=(decl.other_income_notes or "").strip() or None,
                expenses=totals.total_expenses,
                cash_withdrawals=totals.total_withdrawals,
                closing_balance=totals.closing_balance,
                system_services_cash=system[PaymentMethod.CASH],
                system_services_card=system[PaymentMethod.CARD],
                system_services_transfer=system[PaymentMethod.TRANSFER],
                status=CashRegisterStatus.PENDING,
            )
            s.add(reg)
            s.flush()

            _insert_line_items(s, reg, cashier.id, decl.expenses, decl.withdrawals)
            audit.record(
                s, cashier, AuditAction.CREATE, CHANNEL, reg.id,
                new_data={"register_date": day, "closing_balance": totals.closing_balance},
            )
            register_id = reg.id
    except SQLAlchemyError as e:
        logger.exception("Error guardando el corte de %s", cashier.email)
        raise PersistenceError("Error al enviar corte.") from e

    logger.info("Corte %s enviado por %s (cierre %s)", register_id, cashier.email, totals.closing_balance)
    broker.publish(CHANNEL, "INSERT", register_id, user_id=cashier.id, status=CashRegisterStatus.PENDING.value)
    return register_id


# =========================
# Lado revisor
# =========================
def system_expected(register_id: str) -> Decimal:
    with db_session() as s:
        reg = _get_or_raise(s, register_id)
        return sum(_system_totals(s, reg.user_id, reg.register_date).values(), ZERO)


def _resolve_expected(
    s: Session, reg: CashRegister, source: ExpectedSource, manual_expected: Decimal | None
) -> Decimal:
    if source == ExpectedSource.MANUAL:
        if manual_expected is None:
            raise ValidationError("Ingresa el monto esperado del sistema anterior.")
        if manual_expected < 0:
            raise ValidationError("El monto esperado no puede ser negativo.")
        return manual_expected
    return sum(_system_totals(s, reg.user_id, reg.register_date).values(), ZERO)


def preview_review(register_id: str, source: ExpectedSource, manual_expected: Decimal | None = None) -> ReviewPreview:
    with db_session() as s:
        reg = _get_or_raise(s, register_id)
        expected = _resolve_expected(s, reg, source, manual_expected)
        diff = compute_difference(reg.closing_balance, expected)
        return ReviewPreview(
            declared=reg.closing_balance,
            expected=expected,
            source=source,
            difference=diff,
            label=difference_label(diff),
            is_discrepancy=is_discrepancy(diff),
        )


def approve_shift(
    reviewer: Profile,
    register_id: str,
    source: ExpectedSource,
    manual_expected: Decimal | None = None,
    notes: str | None = None,
) -> dict:
    with db_session() as s:
        reg = _get_or_raise(s, register_id)
        _ensure_pending(reg)
        expected = _resolve_expected(s, reg, source, manual_expected)

        reg.status = CashRegisterStatus.APPROVED
        reg.system_total = expected
        reg.expected_source = source
        reg.difference = compute_difference(reg.closing_balance, expected)
        reg.admin_notes = (notes or "").strip() or None
        reg.reviewed_by = reviewer.id
        reg.reviewed_at = now()
        audit.record(
            s, reviewer, AuditAction.UPDATE, CHANNEL, reg.id,
            old_data={"status": CashRegisterStatus.PENDING},
            new_data={"status": reg.status, "expected": expected, "source": source, "difference": reg.difference},
        )
        out = _flat(reg)

    logger.info("Corte %s aprobado (diferencia %s)", register_id, out["difference"])
    broker.publish(CHANNEL, "UPDATE", register_id, user_id=out["user_id"], status=out["status"])
    return out


def reject_shift(reviewer: Profile, register_id: str, notes: str | None) -> dict:
    if not (notes or "").strip():
        raise ValidationError("Debes agregar una nota explicando el rechazo.")

    with db_session() as s:
        reg = _get_or_raise(s, register_id)
        _ensure_pending(reg)
        reg.status = CashRegisterStatus.REJECTED
        reg.admin_notes = notes.strip()
        reg.reviewed_by = reviewer.id
        reg.reviewed_at = now()
        audit.record(
            s, reviewer, AuditAction.UPDATE, CHANNEL, reg.id,
            old_data={"status": CashRegisterStatus.PENDING},
            new_data={"status": reg.status, "notes": reg.admin_notes},
        )
        out = _flat(reg)

    logger.info("Corte %s rechazado", register_id)
    broker.publish(CHANNEL, "UPDATE", register_id, user_id=out["user_id"], status=out["status"])
    return out


def void_shift(admin: Profile, register_id: str, reason: str | None) -> dict:
    """Descarta administrativamente un corte pendiente o rechazado: el cajero puede volver a enviar."""
    if not (reason or "").strip():
        raise ValidationError("Indica el motivo de la anulación.")

    with db_session() as s:
        reg = _get_or_raise(s, register_id)
        if reg.status not in _VOIDABLE:
            raise InvalidTransitionError(f"No se puede anular un corte en estado {reg.status.value}.")
        old = reg.status
        reg.status = CashRegisterStatus.VOIDED
        reg.void_reason = reason.strip()
        audit.record(
            s, admin, AuditAction.UPDATE, CHANNEL, reg.id,
            old_data={"status": old}, new_data={"status": reg.status, "reason": reg.void_reason},
        )
        out = _flat(reg)

    broker.publish(CHANNEL, "UPDATE", register_id, user_id=out["user_id"], status=out["status"])
    return out


def get_shift(register_id: str) -> dict | None:
    with db_session() as s:
        reg = s.get(CashRegister, register_id)
        if not reg:
            return None
        cashier = s.get(Profile, reg.user_id)
        out = _flat(reg, cashier.full_name if cashier else None)
        out["expense_items"] = [
            {"description": e.description, "amount": e.amount, "category": e.category}
            for e in reg.expense_items
        ]
        out["withdrawal_items"] = [
            {"description": w.description, "amount": w.amount, "authorized_by": w.authorized_by}
            for w in reg.withdrawal_items
        ]
        return out


def list_shifts(
    status: CashRegisterStatus | None = None,
    user_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[dict]:
    with db_session() as s:
        q = (
            select(CashRegister, Profile)
            .join(Profile, Profile.id == CashRegister.user_id)
            .order_by(CashRegister.register_date.desc(), CashRegister.created_at.desc())
        )
        if status is not None:
            q = q.where(CashRegister.status == status)
        if user_id:
            q = q.where(CashRegister.user_id == user_id)
        if date_from:
            q = q.where(CashRegister.register_date >= date_from)
        if date_to:
            q = q.where(CashRegister.register_date <= date_to)
        return [_flat(reg, cashier.full_name) for reg, cashier in s.execute(q).all()]


def review_stats(rows: list[dict]) -> dict:
    diffs = [r["difference"] for r in rows if r["difference"] is not None]
    return {
        "pending": sum(1 for r in rows if r["status"] == CashRegisterStatus.PENDING.value),
        "approved": sum(1 for r in rows if r["status"] == CashRegisterStatus.APPROVED.value),
        "rejected": sum(1 for r in rows if r["status"] == CashRegisterStatus.REJECTED.value),
        "voided": sum(1 for r in rows if r["status"] == CashRegisterStatus.VOIDED.value),
        "shortages": sum(1 for d in diffs if d < 0),
        "surpluses": sum(1 for d in diffs if d > 0),
        "total_abs_difference": sum((abs(d) for d in diffs), ZERO),
    }
