"""
Persistencia de SyncControl.

Las transiciones de estado son updates condicionados al estado previo
(PENDING->RUNNING, RUNNING->COMPLETED|FAILED); devuelven False cuando la fila
ya no esta en el estado esperado.

Mientras una fila esta PENDING o RUNNING lleva active_key, unico en la
tabla, de modo que dos peticiones concurrentes no crean dos filas activas para
el mismo processType e idCarga.
"""
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealer_sync.core.clock import local_now
from dealer_sync.models.sync import (
    ACTIVE_STATUSES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    SyncControl,
)
from dealer_sync.repositories.data_access import data_access, paginate


def active_key(process_type: str, id_carga: str) -> str:
    return f'{process_type}|{id_carga}'


@data_access('sync_control.get_by_id')
def get_by_id(db: Session, sync_control_id: int) -> SyncControl | None:
    return db.query(SyncControl).filter(SyncControl.id == sync_control_id).first()


@data_access('sync_control.get_active')
def get_active(db: Session, process_type: str, id_carga: str) -> SyncControl | None:
    return (
        db.query(SyncControl)
        .filter(
            SyncControl.process_type == process_type,
            SyncControl.id_carga == id_carga,
            SyncControl.status.in_(ACTIVE_STATUSES),
        )
        .order_by(SyncControl.id.desc())
        .first()
    )


@data_access('sync_control.list')
def list_controls(
    db: Session,
    process_type: str | None = None,
    id_carga: str | None = None,
    status: str | None = None,
    page: int = 1,
    page_size: int = 50,
):
    query = db.query(SyncControl)
    if process_type:
        query = query.filter(SyncControl.process_type == process_type)
    if id_carga:
        query = query.filter(SyncControl.id_carga == id_carga)
    if status:
        query = query.filter(SyncControl.status == status.strip().upper())
    return paginate(query.order_by(SyncControl.id.desc()), page, page_size)


@data_access('sync_control.list_pending')
def list_pending(db: Session, limit: int = 20) -> list[SyncControl]:
    return (
        db.query(SyncControl)
        .filter(SyncControl.status == STATUS_PENDING)
        .order_by(SyncControl.fecha_registro.asc(), SyncControl.id.asc())
        .limit(limit)
        .all()
    )


@data_access('sync_control.list_stale_running')
def list_stale_running(db: Session, started_before: datetime) -> list[SyncControl]:
    return (
        db.query(SyncControl)
        .filter(SyncControl.status == STATUS_RUNNING, SyncControl.fecha_inicio < started_before)
        .order_by(SyncControl.id.asc())
        .all()
    )


@data_access('sync_control.create')
def create(
    db: Session,
    *,
    process_type: str,
    id_carga: str,
    fecha_carga: datetime | None,
    evento_carga_proceso_id: int | None,
    actor: str,
) -> SyncControl:
    row = SyncControl(
        process_type=process_type,
        id_carga=id_carga,
        fecha_carga=fecha_carga,
        evento_carga_proceso_id=evento_carga_proceso_id,
        status=STATUS_PENDING,
        active_key=active_key(process_type, id_carga),
        fecha_registro=local_now(),
        usuario_registro=actor,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Otra peticion creo la fila activa entre la consulta y el insert
        db.rollback()
        existing = get_active(db, process_type, id_carga)
        if existing is None:
            raise
        return existing
    db.refresh(row)
    return row


def _transition(db: Session, sync_control_id: int, from_statuses: tuple[str, ...], values: dict, actor: str) -> bool:
    values = dict(values)
    values['fecha_modificacion'] = local_now()
    values['usuario_modificacion'] = actor
    affected = (
        db.query(SyncControl)
        .filter(SyncControl.id == sync_control_id, SyncControl.status.in_(from_statuses))
        .update(values, synchronize_session=False)
    )
    db.commit()
    return affected == 1


@data_access('sync_control.mark_running')
def mark_running(db: Session, sync_control_id: int, process_id: str, job_id: str, actor: str) -> bool:
    return _transition(
        db,
        sync_control_id,
        (STATUS_PENDING,),
        {
            'status': STATUS_RUNNING,
            'process_id': process_id,
            'job_id': job_id,
            'fecha_inicio': local_now(),
            'error_message': None,
            'error_details': None,
        },
        actor,
    )


@data_access('sync_control.update_progress')
def update_progress(
    db: Session,
    sync_control_id: int,
    *,
    totales: int,
    procesados: int,
    fallidos: int,
    omitidos: int,
    actor: str = 'system',
) -> bool:
    return _transition(
        db,
        sync_control_id,
        (STATUS_RUNNING,),
        {
            'webhooks_totales': totales,
            'webhooks_procesados': procesados,
            'webhooks_fallidos': fallidos,
            'webhooks_omitidos': omitidos,
        },
        actor,
    )


@data_access('sync_control.mark_completed')
def mark_completed(
    db: Session,
    sync_control_id: int,
    *,
    totales: int,
    procesados: int,
    fallidos: int,
    omitidos: int,
    actor: str = 'system',
) -> bool:
    return _transition(
        db,
        sync_control_id,
        (STATUS_RUNNING,),
        {
            'status': STATUS_COMPLETED,
            'active_key': None,
            'fecha_fin': local_now(),
            'webhooks_totales': totales,
            'webhooks_procesados': procesados,
            'webhooks_fallidos': fallidos,
            'webhooks_omitidos': omitidos,
        },
        actor,
    )


@data_access('sync_control.mark_failed')
def mark_failed(
    db: Session,
    sync_control_id: int,
    error_message: str,
    error_details: str | None = None,
    actor: str = 'system',
) -> bool:
    return _transition(
        db,
        sync_control_id,
        (STATUS_RUNNING,),
        {
            'status': STATUS_FAILED,
            'active_key': None,
            'fecha_fin': local_now(),
            'error_message': (error_message or '')[:1000],
            'error_details': error_details,
        },
        actor,
    )
