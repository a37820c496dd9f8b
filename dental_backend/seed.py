from __future__ import annotations

import logging
import os
from decimal import Decimal

from sqlalchemy import select

from .auth_models import Profile, Role
from .auth_security import hash_password
from .db import db_session
from .models import PatientSource, Treatment

logger = logging.getLogger(__name__)

SOURCES = ["Facebook", "Instagram", "Google", "Recomendación", "Paso por la clínica", "Otro"]

TREATMENTS = [
    ("Limpieza dental", "Preventivo", "500", 45),
    ("Valoración", "Preventivo", "0", 30),
    ("Resina", "Restaurativo", "800", 45),
    ("Endodoncia", "Endodoncia", "3500", 90),
    ("Extracción simple", "Cirugía", "700", 30),
    ("Corona de porcelana", "Prótesis", "4500", 60),
    ("Blanqueamiento", "Estética", "2500", 60),
    ("Ajuste de brackets", "Ortodoncia", "600", 30),
]


def seed_base() -> None:
    """
    Carga datos mínimos (idempotente):
    - usuario admin (ADMIN_EMAIL / ADMIN_PASSWORD)
    - catálogo de tratamientos
    - fuentes de referencia de pacientes
    """
    with db_session() as s:
        for name in SOURCES:
            if s.execute(select(PatientSource).where(PatientSource.name == name)).scalar_one_or_none() is None:
                s.add(PatientSource(name=name))

        for name, category, price, minutes in TREATMENTS:
            if s.execute(select(Treatment).where(Treatment.name == name)).scalar_one_or_none() is None:
                s.add(Treatment(name=name, category=category, base_price=Decimal(price), duration_minutes=minutes))

        email = os.getenv("ADMIN_EMAIL", "admin@denttia.local").strip().lower()
        if s.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none() is None:
            s.add(
                Profile(
                    email=email,
                    password_hash=hash_password(os.getenv("ADMIN_PASSWORD", "admin123")),
                    first_name="Administrador",
                    last_name="",
                    role=Role.ADMIN,
                    # la contraseña por defecto se cambia al primer ingreso
                    must_change_password="ADMIN_PASSWORD" not in os.environ,
                )
            )
            logger.info("Usuario admin %s creado", email)
