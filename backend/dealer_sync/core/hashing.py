"""
Tokens de confirmacion deterministas (SHA-256 hex en minusculas).

El token se calcula sobre la concatenacion sin separadores de los campos, en
orden, y debe ser reproducible bit a bit por cualquier dealer que reciba el
mismo payload.
"""
from __future__ import annotations

import hashlib
from datetime import datetime

from dealer_sync.core.errors import SyncValidationError

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S'


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def generate_sha256_hash(*values: object) -> str:
    if not values:
        raise SyncValidationError('Debe proporcionar al menos un valor para generar el hash')
    concatenated = ''.join('' if v is None else str(v) for v in values)
    if not concatenated.strip():
        raise SyncValidationError('La concatenacion de valores no puede estar vacia')
    return hashlib.sha256(concatenated.encode('utf-8')).hexdigest()


def generate_token_confirmacion(
    id_carga: str | None,
    dealer_bac: str | None,
    proceso: str | None,
    fecha_sincronizacion: datetime,
    registros_sincronizados: int | None,
) -> str:
    """Token = SHA-256(idCarga + dealerBac + proceso + yyyy-MM-ddTHH:mm:ss + registros)."""
    return generate_sha256_hash(
        id_carga,
        dealer_bac,
        proceso,
        format_timestamp(fecha_sincronizacion),
        registros_sincronizados,
    )
