from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealer_sync.core.clock import local_now
from dealer_sync.core.errors import DuplicateConfirmationError, NotFoundError
from dealer_sync.models.sync import EVENTO_SINCRONIZADA, EventoCargaProceso, SincCargaProcesoDealer
from dealer_sync.repositories.data_access import data_access, paginate


def _duplicate(existing: SincCargaProcesoDealer | None, evento_carga_proceso_id: int, dealer_bac: str) -> DuplicateConfirmationError:
    fecha_previa = existing.fecha_registro if existing is not None else None
    return DuplicateConfirmationError(
        f'Ya existe una confirmacion para el dealer {dealer_bac} en el evento {evento_carga_proceso_id}',
        fecha_registro_previo=fecha_previa,
        details={
            'eventoCargaProcesoId': evento_carga_proceso_id,
            'dealerBac': dealer_bac,
            'fechaRegistroPrevio': fecha_previa.isoformat() if fecha_previa else None,
        },
    )


@data_access('confirmations.get_by_evento_and_dealer')
def get_by_evento_and_dealer(db: Session, evento_carga_proceso_id: int, dealer_bac: str) -> SincCargaProcesoDealer | None:
    return (
        db.query(SincCargaProcesoDealer)
        .filter(
            SincCargaProcesoDealer.evento_carga_proceso_id == evento_carga_proceso_id,
            SincCargaProcesoDealer.dealer_bac == dealer_bac,
        )
        .first()
    )


def _refresh_evento_progress(db: Session, evento: EventoCargaProceso, actor: str) -> None:
    sincronizados = (
        db.query(func.count(func.distinct(SincCargaProcesoDealer.dealer_bac)))
        .filter(SincCargaProcesoDealer.evento_carga_proceso_id == evento.id)
        .scalar()
    ) or 0
    totales = int(evento.dealers_totales or 0)
    evento.dealers_sincronizados = int(sincronizados)
    evento.porc_dealers_sinc = round(sincronizados * 100.0 / totales, 2) if totales > 0 else 0.0
    if totales > 0 and sincronizados >= totales:
        evento.estatus = EVENTO_SINCRONIZADA
    evento.fecha_modificacion = local_now()
    evento.usuario_modificacion = actor


@data_access('confirmations.create')
def create(
    db: Session,
    *,
    evento_carga_proceso_id: int,
    proceso: str,
    dealer_bac: str,
    nombre_dealer: str | None,
    dms_origen: str | None,
    fecha_sincronizacion: datetime,
    registros_sincronizados: int,
    token_confirmacion: str,
    actor: str = 'system',
) -> SincCargaProcesoDealer:
    """
    Inserta la confirmacion y actualiza los contadores del evento en la misma transaccion.
    Una confirmacion existente nunca se sobrescribe.
    """
    existing = get_by_evento_and_dealer(db, evento_carga_proceso_id, dealer_bac)
    if existing is not None:
        raise _duplicate(existing, evento_carga_proceso_id, dealer_bac)

    evento = db.query(EventoCargaProceso).filter(EventoCargaProceso.id == evento_carga_proceso_id).first()
    if evento is None:
        raise NotFoundError(
            f'No se encontro el evento de carga de proceso con ID {evento_carga_proceso_id}',
            details={'eventoCargaProcesoId': evento_carga_proceso_id},
        )

    row = SincCargaProcesoDealer(
        evento_carga_proceso_id=evento_carga_proceso_id,
        proceso=proceso,
        dealer_bac=dealer_bac,
        nombre_dealer=nombre_dealer or '',
        dms_origen=dms_origen or '',
        fecha_sincronizacion=fecha_sincronizacion,
        registros_sincronizados=int(registros_sincronizados or 0),
        token_confirmacion=token_confirmacion,
        fecha_registro=local_now(),
        usuario_registro=actor,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        # Otro proceso inserto la misma pareja entre la consulta y el insert
        db.rollback()
        raise _duplicate(get_by_evento_and_dealer(db, evento_carga_proceso_id, dealer_bac), evento_carga_proceso_id, dealer_bac)
    _refresh_evento_progress(db, evento, actor)
    db.commit()
    db.refresh(row)
    return row


@data_access('confirmations.list')
def list_confirmations(
    db: Session,
    evento_carga_proceso_id: int | None = None,
    dealer_bac: str | None = None,
    proceso: str | None = None,
    page: int = 1,
    page_size: int = 50,
):
    query = db.query(SincCargaProcesoDealer)
    if evento_carga_proceso_id is not None:
        query = query.filter(SincCargaProcesoDealer.evento_carga_proceso_id == evento_carga_proceso_id)
    if dealer_bac:
        query = query.filter(SincCargaProcesoDealer.dealer_bac == dealer_bac)
    if proceso:
        query = query.filter(SincCargaProcesoDealer.proceso == proceso)
    return paginate(query.order_by(SincCargaProcesoDealer.id.desc()), page, page_size)


@data_access('confirmations.count_by_evento')
def count_by_evento(db: Session, evento_carga_proceso_id: int) -> int:
    return int(
        db.query(func.count(SincCargaProcesoDealer.id))
        .filter(SincCargaProcesoDealer.evento_carga_proceso_id == evento_carga_proceso_id)
        .scalar()
        or 0
    )
