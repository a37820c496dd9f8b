from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from dental_backend import services
from dental_backend.exceptions import ConflictError, NotFoundError, ValidationError
from dental_backend.models import AppointmentStatus

DAY = date(2026, 5, 4)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(DAY.year, DAY.month, DAY.day, hour, minute)


@pytest.fixture
def doctor_id() -> str:
    return services.create_doctor("Dra. Elena Vega", specialty="Ortodoncia")


def test_end_must_follow_start(patient_id, doctor_id):
    with pytest.raises(ValidationError):
        services.create_appointment(patient_id, at(10), at(10), "Valoración", doctor_id=doctor_id)


def test_doctor_cannot_be_double_booked(patient_id, doctor_id):
    services.create_appointment(patient_id, at(10), at(11), "Limpieza", doctor_id=doctor_id)

    with pytest.raises(ConflictError, match="ya tiene una cita"):
        services.create_appointment(patient_id, at(10, 30), at(11, 30), "Resina", doctor_id=doctor_id)

    # los bordes se tocan pero no se enciman
    services.create_appointment(patient_id, at(11), at(12), "Resina", doctor_id=doctor_id)
    # otro doctor sí puede
    other = services.create_doctor("Dr. Pablo Cruz")
    services.create_appointment(patient_id, at(10, 30), at(11, 30), "Resina", doctor_id=other)


def test_cancelled_appointment_frees_the_slot(patient_id, doctor_id):
    first = services.create_appointment(patient_id, at(16), at(17), "Endodoncia", doctor_id=doctor_id)
    assert services.set_appointment_status(first, AppointmentStatus.CANCELLED)

    second = services.create_appointment(patient_id, at(16), at(17), "Extracción", doctor_id=doctor_id)
    assert second != first

    # reactivar la cancelada chocaría con la nueva
    with pytest.raises(ConflictError):
        services.set_appointment_status(first, AppointmentStatus.SCHEDULED)
    assert not services.set_appointment_status("missing", AppointmentStatus.CONFIRMED)


def test_unknown_patient_or_doctor(patient_id):
    with pytest.raises(NotFoundError):
        services.create_appointment("missing", at(9), at(10), "Valoración")
    with pytest.raises(NotFoundError):
        services.create_appointment(patient_id, at(9), at(10), "Valoración", doctor_id="missing")


def test_agenda_for_day(patient_id, doctor_id):
    treatment_id = services.create_treatment("Resina", "Restaurativo", Decimal("800"), 45)
    services.create_appointment(
        patient_id, at(12), at(12, 45), "Resina 16", doctor_id=doctor_id, treatment_id=treatment_id
    )
    services.create_appointment(patient_id, at(10), at(10, 30), "Valoración")
    services.create_appointment(
        patient_id, datetime(2026, 5, 5, 10), datetime(2026, 5, 5, 11), "Otro día", doctor_id=doctor_id
    )

    rows = services.agenda_flat(DAY)
    assert [r["start"] for r in rows] == ["10:00", "12:00"]
    assert rows[0]["doctor"] is None
    assert rows[1]["patient"] == "Lucía Pérez"
    assert rows[1]["treatment"] == "Resina"
    assert [r["title"] for r in services.agenda_flat(DAY, doctor_id=doctor_id)] == ["Resina 16"]


def test_reminder_link_goes_to_patient_phone(patient_id, doctor_id):
    appt = services.create_appointment(patient_id, at(18), at(18, 30), "Ajuste de brackets", doctor_id=doctor_id)
    link = services.appointment_reminder_link(appt)
    assert link.startswith("https://wa.me/522381106200?text=")
    assert "04/05/2026" in link
    assert services.appointment_reminder_link("missing") is None


def test_treatment_catalog(admin):
    with pytest.raises(ValidationError):
        services.create_treatment("Carillas", "Inventada", Decimal("100"))
    with pytest.raises(ValidationError):
        services.create_treatment("Carillas", "Estética", Decimal("-1"))

    tid = services.create_treatment("Carillas", "Estética", Decimal("3000"), 60, actor=admin)
    updated = services.update_treatment(tid, actor=admin, base_price=Decimal("3200"))
    assert updated["base_price"] == Decimal("3200")

    assert services.delete_treatment(tid, actor=admin)
    assert services.list_treatments(category="Estética") == []
    assert len(services.list_treatments(active_only=False)) == 1


def test_update_doctor_rejects_unknown_fields(doctor_id):
    assert services.update_doctor(doctor_id, color="#FF0000")["color"] == "#FF0000"
    with pytest.raises(ValidationError):
        services.update_doctor(doctor_id, salary=10)
    services.update_doctor(doctor_id, is_active=False)
    assert services.list_doctors() == []


def test_appointment_api(client, auth, cashier, patient_id, doctor_id):
    h = auth(cashier)
    body = {
        "patient_id": patient_id,
        "doctor_id": doctor_id,
        "title": "Limpieza",
        "start": "2026-05-04T10:00:00",
        "end": "2026-05-04T10:45:00",
    }
    r = client.post("/api/appointments", json=body, headers=h)
    assert r.status_code == 200, r.text
    appt_id = r.json()["appointment_id"]

    assert client.post("/api/appointments", json=body, headers=h).status_code == 409

    r = client.patch(f"/api/appointments/{appt_id}/status", json={"status": "confirmed"}, headers=h)
    assert r.status_code == 200
    agenda = client.get("/api/agenda", params={"day": "2026-05-04"}, headers=h).json()
    assert agenda[0]["status"] == "confirmed"
