import logging

from dealer_sync.core.clock import local_now
from dealer_sync.core.errors import NotFoundError, SyncValidationError
from dealer_sync.core.hashing import generate_token_confirmacion
from dealer_sync.db.session import SessionLocal
from dealer_sync.repositories import confirmations as confirmations_repo
from dealer_sync.repositories import snapshot_dealers as dealers_repo

logger = logging.getLogger(__name__)


def _serialize(row) -> dict:
    return {
        'id': row.id,
        'evento_carga_proceso_id': row.evento_carga_proceso_id,
        'proceso': row.proceso,
        'dms_origen': row.dms_origen,
        'dealer_bac': row.dealer_bac,
        'nombre_dealer': row.nombre_dealer,
        'fecha_sincronizacion': row.fecha_sincronizacion.isoformat() if row.fecha_sincronizacion else None,
        'registros_sincronizados': int(row.registros_sincronizados or 0),
        'token_confirmacion': row.token_confirmacion,
        'fecha_registro': row.fecha_registro.isoformat() if row.fecha_registro else None,
        'usuario_registro': row.usuario_registro,
    }


class ConfirmationService:
    @staticmethod
    def create(
        evento_carga_proceso_id: int,
        dealer_bac: str,
        nombre_dealer: str | None = None,
        dms_origen: str | None = None,
        actor: str = 'system',
    ) -> dict:
        """Registra que un dealer sincronizo la carga; el token se calcula con los datos del evento."""
        if not evento_carga_proceso_id or int(evento_carga_proceso_id) <= 0:
            raise SyncValidationError('eventoCargaProcesoId debe ser mayor a 0')
        dealer_bac = str(dealer_bac or '').strip()
        if not dealer_bac:
            raise SyncValidationError('dealerBac es requerido')

        db = SessionLocal()
        try:
            evento = dealers_repo.get_evento(db, int(evento_carga_proceso_id))
            if evento is None:
                raise NotFoundError(
                    f'No se encontro el evento de carga de proceso con ID {evento_carga_proceso_id}',
                    details={'eventoCargaProcesoId': evento_carga_proceso_id},
                )
            fecha = local_now()
            registros = int(evento.registros or 0)
            token = generate_token_confirmacion(evento.id_carga, dealer_bac, evento.proceso, fecha, registros)
            row = confirmations_repo.create(
                db,
                evento_carga_proceso_id=evento.id,
                proceso=evento.proceso,
                dealer_bac=dealer_bac,
                nombre_dealer=nombre_dealer,
                dms_origen=dms_origen,
                fecha_sincronizacion=fecha,
                registros_sincronizados=registros,
                token_confirmacion=token,
                actor=actor,
            )
            logger.info('[confirmations] %s confirmed evento %s', dealer_bac, evento.id)
            return _serialize(row)
        finally:
            db.close()

    @staticmethod
    def list(
        evento_carga_proceso_id: int | None = None,
        dealer_bac: str | None = None,
        proceso: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> dict:
        db = SessionLocal()
        try:
            rows, total = confirmations_repo.list_confirmations(
                db,
                evento_carga_proceso_id=evento_carga_proceso_id,
                dealer_bac=dealer_bac,
                proceso=proceso,
                page=page,
                page_size=page_size,
            )
            return {'items': [_serialize(r) for r in rows], 'total': total, 'page': page, 'page_size': page_size}
        finally:
            db.close()
