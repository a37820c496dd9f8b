from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings

logger = logging.getLogger(__name__)


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # uvicorn y TestClient usan la misma conexión desde otros hilos
        return create_engine(url, future=True, connect_args={"check_same_thread": False})
    return create_engine(url, future=True, pool_pre_ping=True)


DATABASE_URL = get_settings().database_url
engine = make_engine(DATABASE_URL)

# expire_on_commit=False: los servicios devuelven objetos ya cargados fuera de la sesión
SessionLocal = sessionmaker(bind=engine, autoflush=False, future=True, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def db_session() -> Iterator[Session]:
    """Una transacción por caso de uso: commit al salir, rollback si algo falla."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.debug("Rollback: %s", type(e).__name__)
        raise
    finally:
        session.close()
