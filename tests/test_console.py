"""Consola Streamlit contra un backend falso (sin red)."""
from __future__ import annotations

from collections import Counter
from pathlib import Path
from urllib.parse import urlparse

import requests
from streamlit.testing.v1 import AppTest

APP = Path(__file__).resolve().parents[1] / "streamlit_app.py"
PENDING = {"id": "r1", "status": "pending", "status_label": "Pendiente de revisión", "admin_notes": None}


class FakeResponse:
    def __init__(self, url: str, data):
        self.status_code = 200
        self.url = url
        self._data = data

    def json(self):
        return self._data


class FakeBackend:
    """Responde el corte actual que se le indique; todo lo demás son listas vacías."""

    def __init__(self, current: dict | None):
        self.current = current
        self.hits: Counter[str] = Counter()

    def get(self, url: str, **kwargs) -> FakeResponse:
        path = urlparse(url).path
        self.hits[path] += 1
        if path == "/api/cash-register/current":
            return FakeResponse(url, {"current": self.current})
        return FakeResponse(url, [])


def console(monkeypatch, backend: FakeBackend) -> AppTest:
    monkeypatch.setenv("CLINIC_API_URL", "http://api.test")
    monkeypatch.setenv("CLINIC_API_KEY", "test-api-key")
    monkeypatch.setattr(requests, "get", backend.get)
    at = AppTest.from_file(str(APP), default_timeout=30)
    at.session_state["token"] = "sin.firma.valida"
    at.session_state["profile"] = {"email": "recepcion@denttia.test", "role": "receptionist"}
    return at


def shift_form_visible(at: AppTest) -> bool:
    return any(n.label == "Saldo inicial" for n in at.number_input)


def test_missing_config_shows_error(monkeypatch):
    monkeypatch.delenv("CLINIC_API_URL", raising=False)
    monkeypatch.setenv("CLINIC_API_KEY", "")
    at = AppTest.from_file(str(APP), default_timeout=30).run()
    assert "Configuración incompleta" in at.error[0].value


def test_pending_shift_hides_the_form(monkeypatch):
    at = console(monkeypatch, FakeBackend(PENDING)).run()
    assert not at.exception
    assert not shift_form_visible(at)
    assert "Espera la revisión" in at.warning[0].value


def test_voided_shift_redraws_the_whole_page(monkeypatch):
    backend = FakeBackend(PENDING)
    at = console(monkeypatch, backend).run()
    assert backend.hits["/api/cash-register/current"] == 1
    assert not shift_form_visible(at)

    # el admin anuló el corte: el estado cambia y la página se vuelve a dibujar completa
    backend.current = None
    at.run()
    assert not at.exception
    assert backend.hits["/api/cash-register/current"] == 3
    assert shift_form_visible(at)

    # sin cambios no hay redibujo extra
    at.run()
    assert backend.hits["/api/cash-register/current"] == 4
