"""Errores de dominio. El mensaje es el texto corto que ve el usuario."""
from __future__ import annotations


class ValidationError(ValueError):
    """Dato faltante o inválido, detectado antes de escribir en la BD."""


class ConflictError(ValueError):
    """La operación choca con un registro existente (p. ej. corte ya enviado hoy)."""


class InvalidTransitionError(ValueError):
    """Cambio de estado no permitido."""


class NotFoundError(LookupError):
    pass


class PersistenceError(RuntimeError):
    """Fallo al escribir en la BD; la operación completa se revirtió."""
