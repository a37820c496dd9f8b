from __future__ import annotations

from datetime import timedelta

import pytest

from dental_backend import staff_service
from dental_backend.auth_models import AuditSession, Role
from dental_backend.auth_service import authenticate, has_permission, sign_up
from dental_backend.db import db_session
from dental_backend.exceptions import ConflictError, ValidationError
from dental_backend.models import now

from .conftest import PASSWORD


def login(client, email: str, password: str = PASSWORD) -> dict[str, str]:
    r = client.post("/api/auth/login", data={"username": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def test_api_key_is_required(client, auth, cashier):
    r = client.get("/api/auth/session", headers={**auth(cashier), "X-API-Key": "wrong"})
    assert r.status_code == 401
    assert r.json()["detail"] == "API key inválida"


def test_register_login_and_session(client):
    r = client.post("/api/auth/register", json={"email": "Nueva@Denttia.test", "password": "abcdef", "first_name": "Nora"})
    assert r.status_code == 200

    h = login(client, "nueva@denttia.test", "abcdef")
    me = client.get("/api/auth/session", headers=h).json()
    assert me["email"] == "nueva@denttia.test"
    assert me["role"] == "receptionist"
    assert "cash_register" in me["permissions"]
    assert me["last_login"] is not None


def test_duplicate_email_and_short_password():
    sign_up("dup@denttia.test", PASSWORD)
    with pytest.raises(ConflictError):
        sign_up("DUP@denttia.test", PASSWORD)
    with pytest.raises(ValidationError):
        sign_up("otro@denttia.test", "123")


def test_wrong_password_is_401(client, cashier):
    r = client.post("/api/auth/login", data={"username": cashier.email, "password": "incorrecta"})
    assert r.status_code == 401


def test_sign_out_revokes_token(client, cashier):
    h = login(client, cashier.email)
    assert client.post("/api/auth/logout", headers=h).status_code == 200

    r = client.get("/api/auth/session", headers=h)
    assert r.status_code == 401
    assert r.json()["detail"] == "Sesión cerrada"


def test_inactive_user_cannot_use_token_or_login(client, admin, cashier, auth):
    h = auth(cashier)
    staff_service.set_active(admin, cashier.id, False)
    assert client.get("/api/auth/session", headers=h).status_code == 401
    assert authenticate(cashier.email, PASSWORD) is None


def test_admin_cannot_deactivate_self(admin):
    with pytest.raises(ValidationError):
        staff_service.set_active(admin, admin.id, False)


def test_change_password(client, cashier):
    h = login(client, cashier.email)
    bad = client.post("/api/auth/change-password", json={"current_password": "x", "new_password": "nueva123"}, headers=h)
    assert bad.status_code == 400

    ok = client.post("/api/auth/change-password", json={"current_password": PASSWORD, "new_password": "nueva123"}, headers=h)
    assert ok.status_code == 200
    login(client, cashier.email, "nueva123")


def test_staff_user_gets_temporary_password(client, auth, admin):
    r = client.post(
        "/api/staff",
        json={"email": "doc@denttia.test", "first_name": "Eva", "last_name": "Mora", "role": "doctor"},
        headers=auth(admin),
    )
    body = r.json()
    assert len(body["temp_password"]) == 12

    tok = client.post("/api/auth/login", data={"username": "doc@denttia.test", "password": body["temp_password"]}).json()
    assert tok["must_change_password"] is True


def test_role_permissions():
    class P:
        role = Role.DOCTOR

    assert has_permission(P, "odontogram")
    assert not has_permission(P, "cash_register")
    P.role = Role.ADMIN
    assert has_permission(P, "anything")
    assert not has_permission(None, "agenda")


# Auditor externo

@pytest.fixture
def auditor_creds(admin):
    return staff_service.create_audit_session(
        admin,
        "Carla Auditora",
        "carla@auditores.test",
        duration_hours=24,
        can_view_patients=False,
    )


def test_auditor_is_read_only_and_limited_by_flags(client, auditor_creds, admin, cashier):
    h = login(client, auditor_creds.email, auditor_creds.temp_password)

    assert client.get("/api/cash-registers", headers=h).status_code == 200
    assert client.get("/api/patients", headers=h).status_code == 403
    assert client.get("/api/audit-logs", headers=h).status_code == 200

    r = client.post("/api/patients", json={"first_name": "X", "last_name": "Y"}, headers=h)
    assert r.status_code == 403
    assert r.json()["detail"] == "Acceso de solo lectura"

    session = client.get("/api/auth/session", headers=h).json()
    assert session["audit_session"]["can_view_patients"] is False

    # cada lectura queda en la bitácora
    reads = client.get("/api/audit-logs", params={"action": "READ"}, headers=login(client, admin.email)).json()
    assert any(row["user_email"] == auditor_creds.email for row in reads)


def test_expired_audit_session_is_refused(client, auditor_creds):
    h = login(client, auditor_creds.email, auditor_creds.temp_password)
    with db_session() as s:
        s.get(AuditSession, auditor_creds.session_id).expires_at = now() - timedelta(minutes=1)

    r = client.get("/api/cash-registers", headers=h)
    assert r.status_code == 401
    statuses = {row["id"]: row["status"] for row in staff_service.list_audit_sessions()}
    assert statuses[auditor_creds.session_id] == "expired"


def test_revoked_audit_session_is_refused(client, auth, admin, auditor_creds):
    h = login(client, auditor_creds.email, auditor_creds.temp_password)
    r = client.post(
        f"/api/audit-sessions/{auditor_creds.session_id}/revoke",
        json={"reason": "Fin de la migración"},
        headers=auth(admin),
    )
    assert r.status_code == 200
    assert client.get("/api/cash-registers", headers=h).status_code == 401

    again = client.post(f"/api/audit-sessions/{auditor_creds.session_id}/revoke", json={}, headers=auth(admin))
    assert again.status_code == 409


def test_receptionist_cannot_read_audit_logs(client, auth, cashier):
    assert client.get("/api/audit-logs", headers=auth(cashier)).status_code == 403
