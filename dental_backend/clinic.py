"""Datos fijos de la clínica (sedes, horarios, contacto) y mensajes de WhatsApp."""
from __future__ import annotations

from urllib.parse import quote

CLINIC_NAME = "Denttia Servicios Dentales y Ortodoncia"
CLINIC_SHORT_NAME = "Denttia"

WHATSAPP_NUMBER = "5212381106200"  # formato internacional para wa.me
PHONE = "238 392 9829"

LOCATIONS = {
    "tehuacan": {
        "name": "Tehuacán",
        "address": "Plaza Galerias, Calz. Adolfo López Mateos 2811-Local 3, Zona Alta, 75760 Tehuacán, Pue.",
        "short_address": "Plaza Galerias, Local 3, Tehuacán",
    },
    "huautla": {
        "name": "Huautla",
        "address": "Huautla de Jiménez, Oaxaca",
        "short_address": "Huautla de Jiménez",
    },
}

# weekday(): 0=lunes ... 6=domingo; None = cerrado
SCHEDULE = {
    "weekdays": [("10:00", "14:00"), ("16:00", "20:00")],
    "saturday": [("10:00", "14:00"), ("16:00", "20:00")],
    "sunday": None,
}


def opening_hours(weekday: int) -> list[tuple[str, str]] | None:
    if weekday == 6:
        return SCHEDULE["sunday"]
    if weekday == 5:
        return SCHEDULE["saturday"]
    return SCHEDULE["weekdays"]


def whatsapp_link(message: str, phone: str | None = None) -> str:
    return f"https://wa.me/{phone or WHATSAPP_NUMBER}?text={quote(message)}"


def appointment_reminder(patient_name: str, date: str, time: str, doctor_name: str, treatment: str) -> str:
    return (
        f"¡Hola {patient_name}!\n\n"
        f"Te recordamos tu cita en *{CLINIC_NAME}*:\n\n"
        f"*Fecha:* {date}\n"
        f"*Hora:* {time}\n"
        f"*Doctor:* {doctor_name}\n"
        f"*Tratamiento:* {treatment}\n\n"
        f"{LOCATIONS['tehuacan']['short_address']}\n\n"
        "Por favor confirma tu asistencia respondiendo a este mensaje.\n\n"
        "¡Te esperamos!"
    )
