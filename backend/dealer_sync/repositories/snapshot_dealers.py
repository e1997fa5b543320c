from sqlalchemy import func
from sqlalchemy.orm import Session

from dealer_sync.core.clock import local_now
from dealer_sync.models.sync import (
    WEBHOOK_EXITOSO,
    WEBHOOK_FALLIDO,
    EventoCargaProceso,
    EventoCargaSnapshotDealer,
)
from dealer_sync.repositories.data_access import data_access


@data_access('snapshot_dealers.get_evento_actual')
def get_evento_actual(db: Session, proceso: str, id_carga: str) -> EventoCargaProceso | None:
    return (
        db.query(EventoCargaProceso)
        .filter(
            EventoCargaProceso.proceso == proceso,
            EventoCargaProceso.id_carga == id_carga,
            EventoCargaProceso.actual.is_(True),
        )
        .order_by(EventoCargaProceso.id.desc())
        .first()
    )


@data_access('snapshot_dealers.get_evento')
def get_evento(db: Session, evento_carga_proceso_id: int) -> EventoCargaProceso | None:
    return db.query(EventoCargaProceso).filter(EventoCargaProceso.id == evento_carga_proceso_id).first()


@data_access('snapshot_dealers.list_with_webhook')
def list_with_webhook(db: Session, evento_carga_proceso_id: int) -> list[EventoCargaSnapshotDealer]:
    """Dealers del snapshot con url de webhook, en orden estable (url, dealer)."""
    return (
        db.query(EventoCargaSnapshotDealer)
        .filter(
            EventoCargaSnapshotDealer.evento_carga_proceso_id == evento_carga_proceso_id,
            EventoCargaSnapshotDealer.url_webhook.isnot(None),
            func.length(func.trim(EventoCargaSnapshotDealer.url_webhook)) > 0,
        )
        .order_by(EventoCargaSnapshotDealer.url_webhook.asc(), EventoCargaSnapshotDealer.dealer_bac.asc())
        .all()
    )


@data_access('snapshot_dealers.mark_webhook_exitoso')
def mark_webhook_exitoso(
    db: Session,
    tokens_by_dealer_id: dict[int, str],
    *,
    fecha_sincronizacion,
    intentos: int,
    actor: str = 'system',
) -> int:
    if not tokens_by_dealer_id:
        return 0
    now = local_now()
    rows = (
        db.query(EventoCargaSnapshotDealer)
        .filter(EventoCargaSnapshotDealer.id.in_(list(tokens_by_dealer_id)))
        .all()
    )
    for row in rows:
        row.estado_webhook = WEBHOOK_EXITOSO
        row.intentos_webhook = int(row.intentos_webhook or 0) + max(1, intentos)
        row.ultimo_intento_webhook = now
        row.ultimo_error_webhook = None
        row.token_confirmacion = tokens_by_dealer_id[row.id]
        row.fecha_sincronizacion = fecha_sincronizacion
        row.fecha_modificacion = now
        row.usuario_modificacion = actor
    db.commit()
    return len(rows)


@data_access('snapshot_dealers.mark_webhook_fallido')
def mark_webhook_fallido(
    db: Session,
    dealer_ids: list[int],
    *,
    error_message: str,
    intentos: int,
    actor: str = 'system',
) -> int:
    if not dealer_ids:
        return 0
    now = local_now()
    # Un dealer ya EXITOSO nunca vuelve a FALLIDO
    rows = (
        db.query(EventoCargaSnapshotDealer)
        .filter(
            EventoCargaSnapshotDealer.id.in_(list(dealer_ids)),
            EventoCargaSnapshotDealer.estado_webhook != WEBHOOK_EXITOSO,
        )
        .all()
    )
    for row in rows:
        row.estado_webhook = WEBHOOK_FALLIDO
        row.intentos_webhook = int(row.intentos_webhook or 0) + max(1, intentos)
        row.ultimo_intento_webhook = now
        row.ultimo_error_webhook = (error_message or '')[:4000]
        row.fecha_modificacion = now
        row.usuario_modificacion = actor
    db.commit()
    return len(rows)
