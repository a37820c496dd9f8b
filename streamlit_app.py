from __future__ import annotations

import base64
import json
import logging
import os
from datetime import date, datetime, time, timedelta, timezone

import pandas as pd
import requests
import streamlit as st
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger("denttia.console")

st.set_page_config(page_title="Denttia", layout="wide")

API_URL = (os.getenv("CLINIC_API_URL") or "").rstrip("/")
API_KEY = os.getenv("CLINIC_API_KEY") or ""

# Sin las dos variables no hay backend al cual hablar
if not API_URL or not API_KEY:
    st.title("Denttia")
    st.error(
        "Configuración incompleta: define CLINIC_API_URL y CLINIC_API_KEY "
        "en el entorno o en el archivo .env y reinicia la consola."
    )
    st.stop()

TOLERANCE = 50.0
PAYMENT_METHODS = {"cash": "Efectivo", "card": "Tarjeta", "transfer": "Transferencia"}
APPOINTMENT_STATUSES = ["scheduled", "confirmed", "in-progress", "completed", "cancelled", "no-show"]


# JWT helpers (solo para la UI, sin verificar firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    if exp is None:
        return False
    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (int(exp) - 5)


# Cliente HTTP (API key + JWT)

def _headers(token: str | None) -> dict:
    headers = {"X-API-Key": API_KEY}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _check(r: requests.Response) -> dict | list:
    if r.status_code == 401:
        raise PermissionError("Sesión no válida o expirada. Vuelve a iniciar sesión.")
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail")
        except ValueError:
            detail = None
        logger.warning("%s %s -> %s: %s", r.request.method, r.url, r.status_code, detail)
        raise RuntimeError(detail if isinstance(detail, str) else f"Error {r.status_code}")
    return r.json()


def api_get(path: str, token: str | None = None, params: dict | None = None) -> dict | list:
    return _check(requests.get(f"{API_URL}{path}", headers=_headers(token), params=params, timeout=10))


def api_post(path: str, payload: dict, token: str | None = None) -> dict:
    return _check(requests.post(f"{API_URL}{path}", headers=_headers(token), json=payload, timeout=10))


def api_patch(path: str, payload: dict, token: str | None = None) -> dict:
    return _check(requests.patch(f"{API_URL}{path}", headers=_headers(token), json=payload, timeout=10))


def api_login(email: str, password: str) -> dict:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(
        f"{API_URL}/api/auth/login",
        headers=_headers(None),
        data={"username": email, "password": password},
        timeout=10,
    )
    return _check(r)


def money(value) -> str:
    return f"${float(value or 0):,.2f}"


def show_error(e: Exception) -> None:
    if isinstance(e, PermissionError):
        st.session_state["auth_error"] = str(e)
    st.error(str(e))


def do_logout() -> None:
    token = st.session_state.get("token")
    if token:
        try:
            api_post("/api/auth/logout", {}, token=token)
        except (PermissionError, RuntimeError, requests.RequestException) as e:
            logger.info("Logout remoto fallido: %s", e)
    for key in ("token", "profile", "auth_error"):
        st.session_state.pop(key, None)
    st.rerun()


def require_auth() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Sección reservada. Inicia sesión desde la barra lateral.")
        return None
    if jwt_is_expired(token):
        st.error("Sesión expirada. Cierra sesión y vuelve a entrar.")
        return None
    return token


def role() -> str | None:
    return (st.session_state.get("profile") or {}).get("role")


# Barra lateral: acceso

with st.sidebar:
    st.header("Acceso")

    if not st.session_state.get("token"):
        u = st.text_input("Email", key="login_user")
        p = st.text_input("Contraseña", type="password", key="login_pass")

        if st.button("Entrar", key="login_btn"):
            try:
                res = api_login(u.strip().lower(), p)
                st.session_state["token"] = res["access_token"]
                st.session_state["profile"] = api_get("/api/auth/session", token=res["access_token"])
                st.session_state.pop("auth_error", None)
                st.rerun()
            except (PermissionError, RuntimeError):
                st.error("Credenciales inválidas.")
            except requests.RequestException as e:
                st.error(f"API no disponible: {e}")
    else:
        profile = st.session_state.get("profile") or {}
        st.write(f"Usuario: **{profile.get('email', '-')}**")
        st.caption(f"Rol: {profile.get('role', '-')}")
        if profile.get("must_change_password"):
            st.warning("Debes cambiar tu contraseña temporal.")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Cerrar sesión", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_URL}")


# UI

st.title("Denttia · Consola de clínica")

token = require_auth()
if not token:
    st.stop()

current_role = role()
tab_names = ["Agenda", "Pacientes"]
if current_role in ("admin", "receptionist"):
    tab_names = ["Corte de caja", *tab_names, "Pagos"]
if current_role == "admin":
    tab_names.append("Revisión de cortes")
tabs = dict(zip(tab_names, st.tabs(tab_names)))


@st.cache_data(ttl=30)
def load_doctors(tok: str) -> list[dict]:
    return api_get("/api/doctors", token=tok)


@st.cache_data(ttl=30)
def load_treatments(tok: str) -> list[dict]:
    return api_get("/api/treatments", token=tok)


# TAB - Corte de caja (cajero)

@st.fragment(run_every=timedelta(seconds=10))
def shift_status(tok: str) -> None:
    """Vista a ciegas del corte de hoy; se refresca sola mientras espera revisión."""
    try:
        current = api_get("/api/cash-register/current", token=tok)["current"]
    except Exception as e:
        show_error(e)
        return
    had_shift = st.session_state.get("has_shift")
    st.session_state["has_shift"] = current is not None
    # el formulario vive fuera del fragmento: si el corte se anuló (o apareció) hay que redibujar todo
    if had_shift is not None and had_shift != (current is not None):
        st.rerun()
    if current is None:
        st.info("Aún no has enviado el corte de hoy.")
        return

    label = current["status_label"]
    if current["status"] == "pending":
        st.warning(f"{label}. Espera la revisión del administrador.")
    elif current["status"] == "approved":
        st.success(label)
    else:
        st.error(label)
    if current.get("admin_notes"):
        st.write(f"Notas del administrador: {current['admin_notes']}")


def _lines(key: str, columns: list[str]) -> list[dict]:
    frame = st.data_editor(
        pd.DataFrame(columns=columns),
        num_rows="dynamic",
        key=key,
        use_container_width=True,
    )
    rows = []
    for row in frame.to_dict("records"):
        if not str(row.get("description") or "").strip() and not row.get("amount"):
            continue
        rows.append({k: (None if pd.isna(v) else v) for k, v in row.items()})
    return rows


if "Corte de caja" in tabs:
    with tabs["Corte de caja"]:
        st.subheader("Corte de caja del día")
        shift_status(token)

        if not st.session_state.get("has_shift"):
            with st.form("shift_form"):
                opening = st.number_input("Saldo inicial", min_value=0.0, step=50.0, value=None)
                c1, c2, c3 = st.columns(3)
                services_cash = c1.number_input("Servicios efectivo", min_value=0.0, step=50.0)
                services_card = c2.number_input("Servicios tarjeta", min_value=0.0, step=50.0)
                services_transfer = c3.number_input("Servicios transferencia", min_value=0.0, step=50.0)
                products_cash = c1.number_input("Productos efectivo", min_value=0.0, step=50.0)
                products_card = c2.number_input("Productos tarjeta", min_value=0.0, step=50.0)
                products_transfer = c3.number_input("Productos transferencia", min_value=0.0, step=50.0)
                other_income = st.number_input("Otros ingresos (efectivo)", min_value=0.0, step=50.0)
                other_notes = st.text_input("Notas de otros ingresos")

                st.write("Gastos")
                expenses = _lines("expenses_editor", ["description", "amount", "category"])
                st.write("Retiros de efectivo")
                withdrawals = _lines("withdrawals_editor", ["description", "amount", "authorized_by"])

                total_cash = services_cash + products_cash + other_income
                closing = (opening or 0) + total_cash - sum(float(e["amount"] or 0) for e in expenses) - sum(
                    float(w["amount"] or 0) for w in withdrawals
                )
                st.metric("Saldo final calculado", money(closing))

                if st.form_submit_button("Enviar corte"):
                    payload = {
                        "opening_balance": opening,
                        "services_cash": services_cash,
                        "services_card": services_card,
                        "services_transfer": services_transfer,
                        "products_cash": products_cash,
                        "products_card": products_card,
                        "products_transfer": products_transfer,
                        "other_income": other_income,
                        "other_income_notes": other_notes or None,
                        "expenses": [{**e, "category": e.get("category") or "general"} for e in expenses],
                        "withdrawals": withdrawals,
                    }
                    try:
                        api_post("/api/cash-register", payload, token=token)
                        st.success("Corte enviado a revisión.")
                        st.rerun()
                    except Exception as e:
                        show_error(e)


# TAB - Agenda

with tabs["Agenda"]:
    st.subheader("Agenda del día")
    try:
        doctors = load_doctors(token)
    except Exception as e:
        show_error(e)
        doctors = []

    c1, c2 = st.columns(2)
    day = c1.date_input("Día", value=date.today(), key="agenda_day")
    doctor = c2.selectbox(
        "Doctor",
        options=[None, *doctors],
        format_func=lambda d: "Todos" if d is None else d["full_name"],
        key="agenda_doctor",
    )

    try:
        params = {"day": day.isoformat()}
        if doctor:
            params["doctor_id"] = doctor["id"]
        items = api_get("/api/agenda", token=token, params=params)
        if not items:
            st.info("Sin citas para este día.")
        for a in items:
            cols = st.columns([4, 2, 1])
            cols[0].write(
                f"**{a['start']} - {a['end']}** | {a['patient']} | {a['treatment'] or a['title']} | {a['doctor'] or '-'}"
            )
            new_status = cols[1].selectbox(
                "Estado", APPOINTMENT_STATUSES, index=APPOINTMENT_STATUSES.index(a["status"]),
                key=f"st_{a['id']}", label_visibility="collapsed",
            )
            if new_status != a["status"]:
                api_patch(f"/api/appointments/{a['id']}/status", {"status": new_status}, token=token)
                st.rerun()
            if a.get("patient_phone"):
                link = api_get(f"/api/appointments/{a['id']}/reminder", token=token)["url"]
                cols[2].link_button("WhatsApp", link)
    except Exception as e:
        show_error(e)

    with st.expander("Agendar cita"):
        try:
            patients = api_get("/api/patients", token=token)
            treatments = load_treatments(token)
        except Exception as e:
            show_error(e)
            patients, treatments = [], []
        patient = st.selectbox("Paciente", patients, format_func=lambda p: f"{p['last_name']} {p['first_name']}", key="ap_patient")
        treatment = st.selectbox("Tratamiento", [None, *treatments], format_func=lambda t: "-" if t is None else t["name"], key="ap_treat")
        ap_doctor = st.selectbox("Doctor", [None, *doctors], format_func=lambda d: "Por asignar" if d is None else d["full_name"], key="ap_doc")
        ap_day = st.date_input("Fecha", value=date.today(), key="ap_day")
        ap_time = st.time_input("Hora", value=time(10, 0), key="ap_time")
        minutes = st.number_input("Duración (min)", min_value=10, step=10, value=(treatment or {}).get("duration_minutes", 30))

        if st.button("Agendar", key="ap_submit", disabled=not patients):
            start_dt = datetime.combine(ap_day, ap_time)
            payload = {
                "patient_id": patient["id"],
                "title": treatment["name"] if treatment else "Consulta",
                "start": start_dt.isoformat(),
                "end": (start_dt + timedelta(minutes=int(minutes))).isoformat(),
                "doctor_id": ap_doctor["id"] if ap_doctor else None,
                "treatment_id": treatment["id"] if treatment else None,
            }
            try:
                api_post("/api/appointments", payload, token=token)
                st.success("Cita agendada.")
            except Exception as e:
                show_error(e)


# TAB - Pacientes

with tabs["Pacientes"]:
    st.subheader("Pacientes")

    with st.expander("Alta de paciente"):
        try:
            sources = api_get("/api/patient-sources", token=token)
        except Exception as e:
            show_error(e)
            sources = []
        c1, c2 = st.columns(2)
        first_name = c1.text_input("Nombre", key="pt_first")
        last_name = c2.text_input("Apellidos", key="pt_last")
        phone = c1.text_input("Teléfono (10 dígitos)", key="pt_phone")
        email = c2.text_input("Email", key="pt_email")
        dob = c1.date_input("Fecha de nacimiento", value=None, min_value=date(1920, 1, 1), key="pt_dob")
        source = c2.selectbox("¿Cómo nos conoció?", sources, format_func=lambda s: s["name"], key="pt_source")

        if st.button("Registrar paciente", key="pt_submit"):
            payload = {
                "first_name": first_name.strip(),
                "last_name": last_name.strip(),
                "phone": phone.strip() or None,
                "email": email.strip() or None,
                "date_of_birth": dob.isoformat() if dob else None,
                "source_id": source["id"] if source else None,
            }
            try:
                res = api_post("/api/patients/intake", payload, token=token)
                st.success(f"Paciente registrado: {res['patient_id']}")
            except Exception as e:
                show_error(e)

    q = st.text_input("Buscar por nombre, teléfono o email", key="pt_q")
    try:
        rows = api_get("/api/patients", token=token, params={"q": q} if q else None)
        if rows:
            st.dataframe(
                pd.DataFrame(rows)[["last_name", "first_name", "phone", "email", "date_of_birth"]],
                use_container_width=True,
                hide_index=True,
            )
        else:
            st.info("Sin pacientes.")
        birthdays = api_get("/api/patients/birthdays", token=token, params={"days": 7})
        if birthdays:
            st.write("Cumpleaños próximos:")
            for b in birthdays:
                st.write(f"- {b['name']} · {b['birthday']} ({b['age']} años)")
    except Exception as e:
        show_error(e)


# TAB - Pagos

if "Pagos" in tabs:
    with tabs["Pagos"]:
        st.subheader("Cobros")
        try:
            patients = api_get("/api/patients", token=token)
            treatments = load_treatments(token)
            doctors = load_doctors(token)
        except Exception as e:
            show_error(e)
            patients, treatments, doctors = [], [], []

        with st.form("payment_form"):
            patient = st.selectbox("Paciente", patients, format_func=lambda p: f"{p['last_name']} {p['first_name']}")
            treatment = st.selectbox("Tratamiento", [None, *treatments], format_func=lambda t: "-" if t is None else t["name"])
            pay_doctor = st.selectbox("Doctor", [None, *doctors], format_func=lambda d: "-" if d is None else d["full_name"])
            amount = st.number_input("Monto", min_value=0.0, step=50.0)
            method = st.radio("Método", list(PAYMENT_METHODS), format_func=PAYMENT_METHODS.get, horizontal=True)
            if st.form_submit_button("Registrar cobro", disabled=not patients):
                try:
                    api_post(
                        "/api/payments",
                        {
                            "patient_id": patient["id"],
                            "amount": amount,
                            "payment_method": method,
                            "treatment_id": treatment["id"] if treatment else None,
                            "doctor_id": pay_doctor["id"] if pay_doctor else None,
                        },
                        token=token,
                    )
                    st.success("Cobro registrado.")
                except Exception as e:
                    show_error(e)

        try:
            today_rows = api_get("/api/payments", token=token, params={"date_from": date.today().isoformat()})
            if today_rows:
                st.dataframe(
                    pd.DataFrame(today_rows)[["created_at", "patient", "amount", "payment_method", "status"]],
                    use_container_width=True,
                    hide_index=True,
                )
        except Exception as e:
            show_error(e)


# TAB - Revisión de cortes (admin)

if "Revisión de cortes" in tabs:
    with tabs["Revisión de cortes"]:
        st.subheader("Revisión de cortes")
        status_filter = st.selectbox("Estado", ["pending", "approved", "rejected", "voided", None], format_func=lambda s: s or "Todos")
        try:
            data = api_get("/api/cash-registers", token=token, params={"status": status_filter} if status_filter else None)
        except Exception as e:
            show_error(e)
            data = {"items": [], "stats": {}}

        stats = data["stats"]
        cols = st.columns(5)
        cols[0].metric("Pendientes", stats.get("pending", 0))
        cols[1].metric("Aprobados", stats.get("approved", 0))
        cols[2].metric("Rechazados", stats.get("rejected", 0))
        cols[3].metric("Faltantes", stats.get("shortages", 0))
        cols[4].metric("Sobrantes", stats.get("surpluses", 0))

        for reg in data["items"]:
            title = f"{reg['register_date']} · {reg['cashier_name']} · {money(reg['closing_balance'])} · {reg['status']}"
            with st.expander(title):
                c1, c2, c3 = st.columns(3)
                c1.write(f"Saldo inicial: {money(reg['opening_balance'])}")
                c1.write(f"Gastos: {money(reg['expenses'])} · Retiros: {money(reg['cash_withdrawals'])}")
                c2.write(
                    "Sistema: "
                    f"efectivo {money(reg['system_services_cash'])}, tarjeta {money(reg['system_services_card'])}, "
                    f"transferencia {money(reg['system_services_transfer'])}"
                )
                if reg["difference"] is not None:
                    diff = float(reg["difference"])
                    text = f"Diferencia: {money(diff)} ({reg['difference_label']})"
                    (c3.error if abs(diff) > TOLERANCE else c3.success)(text)

                if reg["status"] == "pending":
                    source = st.radio(
                        "Monto esperado", ["system", "manual"], horizontal=True, key=f"src_{reg['id']}",
                        format_func=lambda s: "Sistema (cobros del día)" if s == "system" else "Manual (sistema anterior)",
                    )
                    manual = None
                    if source == "manual":
                        manual = st.number_input("Esperado", min_value=0.0, step=50.0, value=None, key=f"man_{reg['id']}")
                    if source == "system" or manual is not None:
                        try:
                            params = {"source": source}
                            if manual is not None:
                                params["manual_expected"] = manual
                            pv = api_get(f"/api/cash-registers/{reg['id']}/preview", token=token, params=params)
                            st.info(f"Esperado {money(pv['expected'])} · diferencia {money(pv['difference'])} ({pv['label']})")
                        except Exception as e:
                            show_error(e)
                    notes = st.text_area("Notas", key=f"notes_{reg['id']}")
                    b1, b2 = st.columns(2)
                    if b1.button("Aprobar", key=f"ok_{reg['id']}"):
                        try:
                            api_post(
                                f"/api/cash-registers/{reg['id']}/approve",
                                {"source": source, "manual_expected": manual, "notes": notes or None},
                                token=token,
                            )
                            st.rerun()
                        except Exception as e:
                            show_error(e)
                    if b2.button("Rechazar", key=f"ko_{reg['id']}"):
                        try:
                            api_post(f"/api/cash-registers/{reg['id']}/reject", {"notes": notes}, token=token)
                            st.rerun()
                        except Exception as e:
                            show_error(e)

                if reg["status"] in ("pending", "rejected"):
                    reason = st.text_input("Motivo de anulación", key=f"void_{reg['id']}")
                    if st.button("Anular corte", key=f"vbtn_{reg['id']}"):
                        try:
                            api_post(f"/api/cash-registers/{reg['id']}/void", {"reason": reason}, token=token)
                            st.rerun()
                        except Exception as e:
                            show_error(e)
