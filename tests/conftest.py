"""Fixtures comunes: BD SQLite temporal, perfiles por rol y cliente HTTP."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Callable, Iterator

# La BD y los secretos se fijan antes de importar dental_backend (el engine se crea al importar)
_TMP_DIR = Path(tempfile.mkdtemp(prefix="denttia-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.sqlite'}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["CLINIC_API_KEY"] = "test-api-key"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from dental_backend import services  # noqa: E402
from dental_backend.api_main import app  # noqa: E402
from dental_backend.auth_models import Profile, Role  # noqa: E402
from dental_backend.auth_security import create_access_token  # noqa: E402
from dental_backend.auth_service import get_profile_by_id, sign_up  # noqa: E402
from dental_backend.db import Base, engine  # noqa: E402
from dental_backend.realtime import broker  # noqa: E402

API_KEY = "test-api-key"
PASSWORD = "secreto123"


@pytest.fixture(autouse=True)
def fresh_db() -> Iterator[None]:
    """Esquema limpio en cada test."""
    Base.metadata.drop_all(bind=engine)
    services.init_db()
    yield


def make_profile(email: str, role: Role, first_name: str = "Test", last_name: str = "User") -> Profile:
    user_id = sign_up(email, PASSWORD, first_name, last_name, role=role)
    return get_profile_by_id(user_id)


@pytest.fixture
def admin() -> Profile:
    return make_profile("admin@denttia.test", Role.ADMIN, "Ana", "Admin")


@pytest.fixture
def cashier() -> Profile:
    return make_profile("recepcion@denttia.test", Role.RECEPTIONIST, "Rosa", "Recepción")


@pytest.fixture
def other_cashier() -> Profile:
    return make_profile("recepcion2@denttia.test", Role.RECEPTIONIST, "Raúl", "Recepción")


@pytest.fixture
def doctor_user() -> Profile:
    return make_profile("doctor@denttia.test", Role.DOCTOR, "Diego", "Doctor")


@pytest.fixture
def patient_id() -> str:
    return services.create_patient(services.PatientData("Lucía", "Pérez", phone="238 110 6200"))


@pytest.fixture
def client() -> TestClient:
    return TestClient(app, headers={"X-API-Key": API_KEY})


@pytest.fixture
def auth() -> Callable[[Profile], dict[str, str]]:
    def headers(profile: Profile) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(profile.id)}"}
    return headers


@pytest.fixture
def events() -> Iterator[list[tuple]]:
    """Captura lo publicado en el broker sin necesitar un loop."""
    captured: list[tuple] = []
    original = broker.publish

    def spy(channel, event, record_id, user_id=None, **extra):
        captured.append((channel, event, record_id, user_id, extra))
        return original(channel, event, record_id, user_id=user_id, **extra)

    broker.publish = spy
    try:
        yield captured
    finally:
        broker.publish = original
