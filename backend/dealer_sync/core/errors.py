"""
Errores de dominio de la sincronizacion de dealers.

Cada clase lleva un ``error_code`` estable; la API lo traduce a status HTTP
y al cuerpo ``{error_code, message, details, trace_id}``.
"""
from __future__ import annotations

from typing import Any


class SyncError(Exception):
    error_code = 'UNEXPECTED_ERROR'

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class SyncValidationError(SyncError):
    error_code = 'VALIDATION_ERROR'


class DuplicateConfirmationError(SyncError):
    error_code = 'DUPLICATE'

    def __init__(self, message: str, fecha_registro_previo=None, details: Any = None):
        super().__init__(message, details)
        self.fecha_registro_previo = fecha_registro_previo


class NotFoundError(SyncError):
    error_code = 'NOT_FOUND'


class DataAccessError(SyncError):
    error_code = 'DATA_ACCESS_ERROR'


class LockBusyError(SyncError):
    error_code = 'LOCK_BUSY'
