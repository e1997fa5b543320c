from dealer_sync.core.errors import NotFoundError
from dealer_sync.db.session import SessionLocal
from dealer_sync.repositories import sync_control as sync_control_repo


def _iso(value):
    return value.isoformat() if value is not None else None


def serialize_sync_control(row) -> dict:
    return {
        'id': row.id,
        'process_type': row.process_type,
        'id_carga': row.id_carga,
        'fecha_carga': _iso(row.fecha_carga),
        'evento_carga_proceso_id': row.evento_carga_proceso_id,
        'process_id': row.process_id,
        'job_id': row.job_id,
        'status': row.status,
        'fecha_inicio': _iso(row.fecha_inicio),
        'fecha_fin': _iso(row.fecha_fin),
        'webhooks_totales': int(row.webhooks_totales or 0),
        'webhooks_procesados': int(row.webhooks_procesados or 0),
        'webhooks_fallidos': int(row.webhooks_fallidos or 0),
        'webhooks_omitidos': int(row.webhooks_omitidos or 0),
        'error_message': row.error_message,
        'fecha_registro': _iso(row.fecha_registro),
        'usuario_registro': row.usuario_registro,
        'fecha_modificacion': _iso(row.fecha_modificacion),
    }


class SyncControlService:
    @staticmethod
    def get(sync_control_id: int) -> dict:
        db = SessionLocal()
        try:
            row = sync_control_repo.get_by_id(db, sync_control_id)
            if row is None:
                raise NotFoundError(f'No existe el registro de control {sync_control_id}')
            return serialize_sync_control(row)
        finally:
            db.close()

    @staticmethod
    def list(
        process_type: str | None = None,
        id_carga: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> dict:
        db = SessionLocal()
        try:
            rows, total = sync_control_repo.list_controls(
                db,
                process_type=process_type,
                id_carga=id_carga,
                status=status,
                page=page,
                page_size=page_size,
            )
            return {
                'items': [serialize_sync_control(r) for r in rows],
                'total': total,
                'page': page,
                'page_size': page_size,
            }
        finally:
            db.close()
