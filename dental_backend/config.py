from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# BD SQLite en archivo en la raíz del proyecto (junto a streamlit_app.py)
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DB_PATH = PROJECT_ROOT / "denttia.sqlite"

# Solo para colorear en la UI: arriba de este umbral el corte se muestra "con discrepancia"
DISCREPANCY_TOLERANCE = Decimal("50")


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    jwt_expire_minutes: int
    api_key: str | None
    log_level: str


def get_settings() -> Settings:
    """
    Lee la configuración del entorno (incluido .env).
    En producción JWT_SECRET y CLINIC_API_KEY siempre deben definirse.
    """
    return Settings(
        database_url=os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_PATH}"),
        jwt_secret=os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET"),
        jwt_expire_minutes=int(os.getenv("JWT_EXPIRE_MINUTES", "60")),
        api_key=os.getenv("CLINIC_API_KEY") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
