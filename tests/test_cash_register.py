from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from dental_backend import billing, cash_register
from dental_backend.cash_register import (
    ExpenseLine,
    ShiftDeclaration,
    WithdrawalLine,
    compute_difference,
    compute_totals,
    difference_label,
    is_discrepancy,
    validate_declaration,
)
from dental_backend.exceptions import (
    ConflictError,
    InvalidTransitionError,
    PersistenceError,
    ValidationError,
)
from dental_backend.models import ExpectedSource, PaymentMethod, PaymentStatus


def declaration(**overrides) -> ShiftDeclaration:
    data = dict(
        opening_balance=Decimal("1000"),
        services_cash=Decimal("500"),
        products_cash=Decimal("200"),
        expenses=(ExpenseLine("Material de curación", Decimal("100")),),
    )
    data.update(overrides)
    return ShiftDeclaration(**data)


# Cálculos

def test_closing_balance_example():
    totals = compute_totals(declaration())
    assert totals.total_cash == Decimal("700")
    assert totals.total_expenses == Decimal("100")
    assert totals.closing_balance == Decimal("1600")


def test_card_and_transfer_do_not_change_closing_balance():
    base = compute_totals(declaration())
    with_cards = compute_totals(
        declaration(
            services_card=Decimal("900"),
            products_transfer=Decimal("300"),
            withdrawals=(WithdrawalLine("Depósito al banco", Decimal("250"), "Dra. Ruiz"),),
        )
    )
    assert with_cards.total_card == Decimal("900")
    assert with_cards.total_transfer == Decimal("300")
    assert with_cards.closing_balance == base.closing_balance - Decimal("250")
    assert with_cards.grand_total == Decimal("1900")


def test_other_income_counts_as_cash():
    totals = compute_totals(declaration(other_income=Decimal("150")))
    assert totals.total_cash == Decimal("850")
    assert totals.closing_balance == Decimal("1750")


def test_difference_sign_and_label():
    diff = compute_difference(Decimal("1600"), Decimal("1550"))
    assert diff == Decimal("50")
    assert difference_label(diff) == "sobrante"
    assert difference_label(compute_difference(Decimal("1500"), Decimal("1550"))) == "faltante"
    assert difference_label(Decimal("0")) == "cuadrado"
    assert difference_label(None) is None


def test_discrepancy_only_above_tolerance():
    assert not is_discrepancy(Decimal("50"))
    assert not is_discrepancy(Decimal("-50"))
    assert is_discrepancy(Decimal("50.01"))
    assert is_discrepancy(Decimal("-120"))
    assert not is_discrepancy(None)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"opening_balance": None}, "saldo inicial"),
        ({"services_card": Decimal("-1")}, "negativos"),
        ({"expenses": (ExpenseLine("  ", Decimal("10")),)}, "descripción"),
        ({"expenses": (ExpenseLine("Luz", Decimal("0")),)}, "mayor a cero"),
        ({"withdrawals": (WithdrawalLine("Retiro", Decimal("-5")),)}, "mayor a cero"),
    ],
)
def test_invalid_declarations_are_refused(overrides, message):
    with pytest.raises(ValidationError, match=message):
        validate_declaration(declaration(**overrides))


# Envío

def test_submit_persists_pending_shift_with_line_items(cashier, events):
    register_id = cash_register.submit_shift(
        cashier,
        declaration(withdrawals=(WithdrawalLine("Pago a proveedor", Decimal("50"), "Dr. Soto"),)),
    )

    reg = cash_register.get_shift(register_id)
    assert reg["status"] == "pending"
    assert reg["user_id"] == cashier.id
    assert reg["register_date"] == date.today().isoformat()
    assert reg["closing_balance"] == Decimal("1550")
    assert reg["expenses"] == Decimal("100")
    assert reg["cash_withdrawals"] == Decimal("50")
    assert reg["difference"] is None
    assert [e["description"] for e in reg["expense_items"]] == ["Material de curación"]
    assert reg["withdrawal_items"][0]["authorized_by"] == "Dr. Soto"

    assert events[-1][:2] == ("cash_registers", "INSERT")
    assert events[-1][3] == cashier.id


def test_submit_stores_system_totals_from_completed_payments(cashier, patient_id):
    billing.record_payment(cashier, patient_id, Decimal("800"), PaymentMethod.CASH)
    billing.record_payment(cashier, patient_id, Decimal("300"), PaymentMethod.CARD)
    billing.record_payment(cashier, patient_id, Decimal("999"), PaymentMethod.CASH, status=PaymentStatus.PENDING)

    reg = cash_register.get_shift(cash_register.submit_shift(cashier, declaration()))
    assert reg["system_services_cash"] == Decimal("800")
    assert reg["system_services_card"] == Decimal("300")
    assert reg["system_services_transfer"] == Decimal("0")


def test_second_submission_same_day_conflicts(cashier, other_cashier):
    cash_register.submit_shift(cashier, declaration())
    with pytest.raises(ConflictError, match="Ya existe un corte para hoy"):
        cash_register.submit_shift(cashier, declaration())

    # otro cajero no se ve afectado
    assert cash_register.submit_shift(other_cashier, declaration())


def test_previous_day_shift_does_not_block_today(cashier):
    cash_register.submit_shift(cashier, declaration(), day=date.today() - timedelta(days=1))
    assert cash_register.submit_shift(cashier, declaration())


def test_failed_write_rolls_back_whole_submission(cashier, monkeypatch):
    def broken(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(cash_register, "_insert_line_items", broken)
    with pytest.raises(PersistenceError, match="Error al enviar corte"):
        cash_register.submit_shift(cashier, declaration())

    assert cash_register.current_shift(cashier.id) is None
    assert cash_register.list_shifts() == []


# Revisión

def test_approve_with_system_expected(admin, cashier, patient_id, events):
    billing.record_payment(cashier, patient_id, Decimal("1000"), PaymentMethod.CASH)
    billing.record_payment(cashier, patient_id, Decimal("550"), PaymentMethod.TRANSFER)
    register_id = cash_register.submit_shift(cashier, declaration())

    assert cash_register.system_expected(register_id) == Decimal("1550")
    out = cash_register.approve_shift(admin, register_id, ExpectedSource.SYSTEM, notes="Todo en orden")

    assert out["status"] == "approved"
    assert out["system_total"] == Decimal("1550")
    assert out["difference"] == Decimal("50")
    assert out["difference_label"] == "sobrante"
    assert out["is_discrepancy"] is False
    assert out["reviewed_by"] == admin.id
    assert out["admin_notes"] == "Todo en orden"
    assert events[-1][:2] == ("cash_registers", "UPDATE")
    assert events[-1][3] == cashier.id


def test_approve_with_manual_expected(admin, cashier):
    register_id = cash_register.submit_shift(cashier, declaration())
    out = cash_register.approve_shift(admin, register_id, ExpectedSource.MANUAL, manual_expected=Decimal("1700"))

    assert out["expected_source"] == "manual"
    assert out["difference"] == Decimal("-100")
    assert out["difference_label"] == "faltante"
    assert out["is_discrepancy"] is True


def test_approve_manual_requires_expected_value(admin, cashier):
    register_id = cash_register.submit_shift(cashier, declaration())
    with pytest.raises(ValidationError, match="monto esperado"):
        cash_register.approve_shift(admin, register_id, ExpectedSource.MANUAL)
    assert cash_register.get_shift(register_id)["status"] == "pending"


def test_preview_does_not_change_status(admin, cashier):
    register_id = cash_register.submit_shift(cashier, declaration())
    preview = cash_register.preview_review(register_id, ExpectedSource.MANUAL, Decimal("1550"))
    assert preview.difference == Decimal("50")
    assert preview.label == "sobrante"
    assert cash_register.get_shift(register_id)["status"] == "pending"


def test_reject_requires_notes(admin, cashier):
    register_id = cash_register.submit_shift(cashier, declaration())
    with pytest.raises(ValidationError, match="nota"):
        cash_register.reject_shift(admin, register_id, "   ")

    out = cash_register.reject_shift(admin, register_id, "Faltan comprobantes de gastos")
    assert out["status"] == "rejected"
    assert out["admin_notes"] == "Faltan comprobantes de gastos"
    assert out["difference"] is None


def test_only_pending_shifts_can_be_reviewed(admin, cashier):
    register_id = cash_register.submit_shift(cashier, declaration())
    cash_register.approve_shift(admin, register_id, ExpectedSource.MANUAL, manual_expected=Decimal("1600"))

    with pytest.raises(InvalidTransitionError):
        cash_register.reject_shift(admin, register_id, "Cambio de opinión")
    with pytest.raises(InvalidTransitionError):
        cash_register.approve_shift(admin, register_id, ExpectedSource.SYSTEM)
    with pytest.raises(InvalidTransitionError):
        cash_register.void_shift(admin, register_id, "Error")


def test_void_frees_the_day_for_a_new_submission(admin, cashier):
    first = cash_register.submit_shift(cashier, declaration())
    cash_register.reject_shift(admin, first, "Montos equivocados")

    with pytest.raises(ValidationError):
        cash_register.void_shift(admin, first, "")
    voided = cash_register.void_shift(admin, first, "El cajero debe reenviar")
    assert voided["status"] == "voided"

    second = cash_register.submit_shift(cashier, declaration(opening_balance=Decimal("900")))
    assert second != first
    assert cash_register.current_shift(cashier.id).id == second


def test_new_submission_after_void_brings_its_own_line_items(admin, cashier):
    first = cash_register.submit_shift(
        cashier, declaration(withdrawals=(WithdrawalLine("Depósito", Decimal("200"), "Dra. Vega"),))
    )
    cash_register.void_shift(admin, first, "Retiro mal capturado")

    second = cash_register.submit_shift(
        cashier, declaration(expenses=(ExpenseLine("Guantes", Decimal("80")), ExpenseLine("Café", Decimal("40"))))
    )

    old, new = cash_register.get_shift(first), cash_register.get_shift(second)
    assert [e["description"] for e in old["expense_items"]] == ["Material de curación"]
    assert [w["authorized_by"] for w in old["withdrawal_items"]] == ["Dra. Vega"]
    assert sorted(e["description"] for e in new["expense_items"]) == ["Café", "Guantes"]
    assert new["withdrawal_items"] == []


def test_cashier_view_is_blind_until_reviewed(admin, cashier):
    register_id = cash_register.submit_shift(cashier, declaration())
    view = cash_register.cashier_view(cash_register.current_shift(cashier.id))
    assert view["status"] == "pending"
    assert view["status_label"] == "Corte Enviado a Revisión"
    assert view["admin_notes"] is None
    assert "difference" not in view
    assert "system_total" not in view

    cash_register.reject_shift(admin, register_id, "Revisa el retiro")
    view = cash_register.cashier_view(cash_register.current_shift(cashier.id))
    assert view["status_label"] == "Corte Rechazado"
    assert view["admin_notes"] == "Revisa el retiro"


def test_list_and_stats(admin, cashier, other_cashier):
    a = cash_register.submit_shift(cashier, declaration())
    b = cash_register.submit_shift(other_cashier, declaration())
    cash_register.approve_shift(admin, a, ExpectedSource.MANUAL, manual_expected=Decimal("1700"))

    rows = cash_register.list_shifts()
    assert {r["id"] for r in rows} == {a, b}
    assert {r["cashier_name"] for r in rows} == {"Rosa Recepción", "Raúl Recepción"}

    stats = cash_register.review_stats(rows)
    assert stats["pending"] == 1
    assert stats["approved"] == 1
    assert stats["shortages"] == 1
    assert stats["surpluses"] == 0
    assert stats["total_abs_difference"] == Decimal("100")

    pending = cash_register.list_shifts(status=cash_register.CashRegisterStatus.PENDING)
    assert [r["id"] for r in pending] == [b]
