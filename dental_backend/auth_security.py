from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from dental_backend.config import get_settings

JWT_ALG = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# sin caracteres ambiguos (0/O, 1/l/I)
_PASSWORD_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789!@#$%"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def generate_password(length: int = 12) -> str:
    """Contraseña temporal para personal y auditores externos."""
    return "".join(secrets.choice(_PASSWORD_CHARS) for _ in range(length))


def create_access_token(subject: str, extra: dict[str, Any] | None = None) -> str:
    """
    subject: id del perfil.
    Cada token lleva un jti propio para poder revocarlo en el sign-out.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.jwt_expire_minutes)

    payload: dict[str, Any] = {
        "sub": subject,
        "jti": str(uuid.uuid4()),
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALG)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, get_settings().jwt_secret, algorithms=[JWT_ALG])


def get_claims(token: str) -> dict[str, Any] | None:
    try:
        payload = decode_token(token)
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload
