from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from dental_backend import billing, services
from dental_backend.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from dental_backend.models import CommissionStatus, PaymentMethod, PaymentStatus


@pytest.fixture
def doctor_id() -> str:
    return services.create_doctor("Dr. Hugo Salas")


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10")])
def test_amount_must_be_positive(cashier, patient_id, amount):
    with pytest.raises(ValidationError):
        billing.record_payment(cashier, patient_id, amount, PaymentMethod.CASH)


def test_cannot_record_cancelled_payment(cashier, patient_id):
    with pytest.raises(ValidationError):
        billing.record_payment(cashier, patient_id, Decimal("100"), PaymentMethod.CASH, status=PaymentStatus.CANCELLED)


def test_commission_percentage_is_clamped(doctor_id):
    assert billing.set_commission(doctor_id, Decimal("130")) == Decimal("100")
    assert billing.set_commission(doctor_id, Decimal("-5")) == Decimal("0")
    with pytest.raises(NotFoundError):
        billing.set_commission("missing", Decimal("10"))


def test_completed_payment_creates_commission(cashier, admin, patient_id, doctor_id, events):
    billing.set_commission(doctor_id, Decimal("30"))
    payment_id = billing.record_payment(
        cashier, patient_id, Decimal("1250.50"), PaymentMethod.CARD, doctor_id=doctor_id
    )

    rows = billing.list_commissions(doctor_id)
    assert len(rows) == 1
    assert rows[0]["payment_id"] == payment_id
    assert rows[0]["amount"] == Decimal("375.15")
    assert rows[0]["status"] == "pending"
    assert events[-1][:3] == ("payments", "INSERT", payment_id)

    billing.mark_commission_paid(rows[0]["id"], actor=admin)
    assert billing.list_commissions(status=CommissionStatus.PAID)[0]["paid_at"] is not None
    with pytest.raises(InvalidTransitionError):
        billing.mark_commission_paid(rows[0]["id"])


def test_no_commission_without_percentage(cashier, patient_id, doctor_id):
    billing.record_payment(cashier, patient_id, Decimal("500"), PaymentMethod.CASH, doctor_id=doctor_id)
    assert billing.list_commissions() == []


def test_pending_payment_completes_later(cashier, patient_id, doctor_id):
    billing.set_commission(doctor_id, Decimal("10"))
    pid = billing.record_payment(
        cashier, patient_id, Decimal("800"), PaymentMethod.TRANSFER, status=PaymentStatus.PENDING, doctor_id=doctor_id
    )
    assert billing.list_commissions() == []
    assert billing.finance_summary()["pending_total"] == Decimal("800.00")

    out = billing.set_payment_status(pid, PaymentStatus.COMPLETED, actor=cashier)
    assert out["paid_at"] is not None
    assert billing.list_commissions()[0]["amount"] == Decimal("80.00")


def test_cancelling_drops_pending_commission(cashier, patient_id, doctor_id, events):
    billing.set_commission(doctor_id, Decimal("20"))
    pid = billing.record_payment(cashier, patient_id, Decimal("1000"), PaymentMethod.CASH, doctor_id=doctor_id)

    out = billing.set_payment_status(pid, PaymentStatus.CANCELLED, actor=cashier)
    assert out["status"] == "cancelled"
    assert billing.list_commissions() == []
    assert events[-1][1] == "UPDATE"

    with pytest.raises(InvalidTransitionError):
        billing.set_payment_status(pid, PaymentStatus.COMPLETED)
    with pytest.raises(NotFoundError):
        billing.set_payment_status("missing", PaymentStatus.CANCELLED)


def test_completed_cannot_go_back_to_pending(cashier, patient_id):
    pid = billing.record_payment(cashier, patient_id, Decimal("300"), PaymentMethod.CASH)
    with pytest.raises(InvalidTransitionError):
        billing.set_payment_status(pid, PaymentStatus.PENDING)


def test_finance_summary_by_method(cashier, patient_id):
    billing.record_payment(cashier, patient_id, Decimal("500"), PaymentMethod.CASH)
    billing.record_payment(cashier, patient_id, Decimal("350"), PaymentMethod.CARD)
    billing.record_payment(cashier, patient_id, Decimal("200"), PaymentMethod.CASH, status=PaymentStatus.PENDING)

    summary = billing.finance_summary(date.today())
    assert summary["today"]["total"] == Decimal("850.00")
    assert summary["today"]["by_method"] == {
        "cash": Decimal("500.00"),
        "card": Decimal("350.00"),
        "transfer": Decimal("0"),
    }
    assert summary["month"]["total"] == Decimal("850.00")
    assert summary["pending_total"] == Decimal("200.00")


def test_list_payments_filters(cashier, other_cashier, patient_id):
    mine = billing.record_payment(cashier, patient_id, Decimal("100"), PaymentMethod.CASH)
    billing.record_payment(other_cashier, patient_id, Decimal("200"), PaymentMethod.CARD)

    rows = billing.list_payments(user_id=cashier.id)
    assert [r["id"] for r in rows] == [mine]
    assert rows[0]["patient"] == "Lucía Pérez"
    assert len(billing.list_payments(date_from=date.today(), date_to=date.today())) == 2


def test_payment_api_roles(client, auth, cashier, doctor_user, patient_id):
    body = {"patient_id": patient_id, "amount": 450, "payment_method": "cash"}
    assert client.post("/api/payments", json=body, headers=auth(doctor_user)).status_code == 403

    r = client.post("/api/payments", json=body, headers=auth(cashier))
    assert r.status_code == 200, r.text
    pid = r.json()["payment_id"]

    r = client.patch(f"/api/payments/{pid}/status", json={"status": "pending"}, headers=auth(cashier))
    assert r.status_code == 409
