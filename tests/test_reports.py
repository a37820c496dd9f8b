from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from dental_backend import billing, clinical, reports, services
from dental_backend.models import AppointmentStatus, PaymentMethod
from dental_backend.seed import seed_base


def test_dashboard_counts_today(cashier, patient_id):
    today = date.today()
    start = datetime.combine(today, time(10))
    services.create_appointment(patient_id, start, start + timedelta(minutes=30), "Valoración")
    billing.record_payment(cashier, patient_id, Decimal("600"), PaymentMethod.CASH)

    out = reports.dashboard(today)
    assert out["patients"] == 1
    assert out["appointments_today"] == 1
    assert out["revenue_today"] == Decimal("600.00")
    assert out["revenue_month"] == Decimal("600.00")


def test_range_report(cashier):
    seed_base()
    today = date.today()
    source_id = next(s["id"] for s in clinical.list_sources() if s["name"] == "Google")
    pid = clinical.register_intake(clinical.IntakeData(services.PatientData("Iris", "Mena"), source_id))
    doctor_id = services.create_doctor("Dra. Nadia Paz")
    resina = next(t["id"] for t in services.list_treatments() if t["name"] == "Resina")

    start = datetime.combine(today, time(9))
    a1 = services.create_appointment(pid, start, start + timedelta(hours=1), "Resina", doctor_id=doctor_id)
    services.create_appointment(pid, start + timedelta(hours=2), start + timedelta(hours=3), "Revisión")
    services.set_appointment_status(a1, AppointmentStatus.COMPLETED)
    billing.record_payment(cashier, pid, Decimal("800"), PaymentMethod.CARD, treatment_id=resina)
    billing.record_payment(cashier, pid, Decimal("800"), PaymentMethod.CASH, treatment_id=resina)

    out = reports.range_report(today - timedelta(days=7), today)
    assert out["revenue"]["total"] == Decimal("1600.00")
    assert out["revenue"]["by_method"]["card"] == Decimal("800.00")
    assert out["appointments_by_status"] == {"completed": 1, "scheduled": 1}
    assert {"doctor": "Dra. Nadia Paz", "appointments": 1} in out["appointments_by_doctor"]
    assert {"doctor": "Sin asignar", "appointments": 1} in out["appointments_by_doctor"]
    assert out["new_patients"] == 1
    assert out["referral_sources"] == [{"source": "Google", "patients": 1}]
    assert out["top_treatments"] == [{"treatment": "Resina", "payments": 2, "revenue": Decimal("1600.00")}]


def test_range_report_rejects_inverted_dates():
    with pytest.raises(ValueError):
        reports.range_report(date(2026, 2, 1), date(2026, 1, 1))


def test_report_api_is_admin_only(client, auth, admin, cashier):
    params = {"date_from": "2026-01-01", "date_to": "2026-01-31"}
    assert client.get("/api/reports", params=params, headers=auth(cashier)).status_code == 403
    r = client.get("/api/reports", params=params, headers=auth(admin))
    assert r.status_code == 200
    assert r.json()["new_patients"] == 0

    bad = client.get("/api/reports", params={"date_from": "2026-02-01", "date_to": "2026-01-01"}, headers=auth(admin))
    assert bad.status_code == 400
