"""
Orquestador del batch de sincronizacion de dealers.

Ciclo de un SyncControl: PENDING -> RUNNING -> COMPLETED | FAILED.
Una fila solo pasa a RUNNING con el lock del tipo de proceso adquirido; si el
lock esta ocupado la fila queda PENDING para un reintento posterior. Desde
RUNNING el lock se libera siempre, termine la corrida como termine.
"""
from __future__ import annotations

import logging
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta

from dealer_sync.core.clock import local_now
from dealer_sync.core.config import settings
from dealer_sync.core.errors import LockBusyError, NotFoundError, SyncError, SyncValidationError
from dealer_sync.core.logging_config import log_batch_event
from dealer_sync.db.session import SessionLocal
from dealer_sync.models.sync import EVENTO_SINCRONIZADA, STATUS_PENDING, STATUS_RUNNING
from dealer_sync.repositories import snapshot_dealers as dealers_repo
from dealer_sync.repositories import sync_control as sync_control_repo
from dealer_sync.services.distributed_lock import DistributedLockService, LockHandle, LockHeartbeat
from dealer_sync.services.payload import DealerTarget, EventoInfo
from dealer_sync.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = 'Proceso cancelado por apagado del servicio'
INTERRUPTED_MESSAGE = 'job_interrupted'
LOCK_LOST_MESSAGE = 'Proceso detenido: se perdio el lock del processType'


def new_process_id() -> str:
    return uuid.uuid4().hex[:16].upper()


@dataclass
class BatchStartResult:
    process_id: str
    lock_acquired: bool
    message: str
    process_type: str
    id_carga: str
    sync_control_id: int | None = None
    status: str | None = None
    job_id: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


class RunStopSignal:
    """Parada de una corrida: apagado del servicio o perdida del lock."""

    def __init__(self, shutdown: threading.Event):
        self._shutdown = shutdown
        self.lock_lost = threading.Event()

    def is_set(self) -> bool:
        return self._shutdown.is_set() or self.lock_lost.is_set()


class BatchSyncOrchestrator:
    def __init__(
        self,
        lock_service: DistributedLockService,
        dispatcher: WebhookDispatcher | None = None,
        session_factory=SessionLocal,
        executor=None,
        stop_event: threading.Event | None = None,
        process_types: list[str] | None = None,
    ):
        self._lock_service = lock_service
        self._session_factory = session_factory
        self._dispatcher = dispatcher or WebhookDispatcher(session_factory=session_factory)
        self._executor = executor
        self.stop_event = stop_event or threading.Event()
        self.process_types = list(process_types if process_types is not None else settings.process_types)
        self.initial_expiry_seconds = settings.lock_initial_expiry_seconds
        self.renewal_interval_seconds = settings.lock_renewal_interval_seconds
        self.renewal_expiry_seconds = settings.lock_renewal_expiry_seconds

    def _validate_request(self, process_type: str, id_carga: str) -> tuple[str, str]:
        process_type = str(process_type or '').strip()
        id_carga = str(id_carga or '').strip()
        errors = []
        if not process_type:
            errors.append('processType es requerido')
        if not id_carga:
            errors.append('idCarga es requerido')
        if errors:
            raise SyncValidationError(f"Validacion fallida: {', '.join(errors)}", details={'errors': errors})
        if process_type not in self.process_types:
            raise SyncValidationError(
                f"El proceso '{process_type}' no esta implementado",
                details={'process_type': process_type, 'implemented': self.process_types},
            )
        return process_type, id_carga

    def start_batch_sync(self, process_type: str, id_carga: str, actor: str = 'system') -> BatchStartResult:
        process_type, id_carga = self._validate_request(process_type, id_carga)
        process_id = new_process_id()
        logger.info('[batch_sync:%s] requested %s/%s by %s', process_id, process_type, id_carga, actor)

        db = self._session_factory()
        try:
            evento = dealers_repo.get_evento_actual(db, process_type, id_carga)
            if evento is None:
                raise NotFoundError(
                    f"No se encontro un proceso de carga con processType '{process_type}' e idCarga '{id_carga}'",
                    details={'process_type': process_type, 'id_carga': id_carga},
                )
            if str(evento.estatus or '').strip().upper() == EVENTO_SINCRONIZADA:
                raise SyncValidationError(
                    f"El proceso '{process_type}' con idCarga '{id_carga}' ya esta sincronizado",
                    details={'estatus': evento.estatus},
                )
            control = sync_control_repo.get_active(db, process_type, id_carga)
            if control is not None and control.status == STATUS_RUNNING:
                return BatchStartResult(
                    process_id=control.process_id or process_id,
                    lock_acquired=False,
                    message=f"Ya existe un proceso en ejecucion para '{process_type}' e idCarga '{id_carga}'",
                    process_type=process_type,
                    id_carga=id_carga,
                    sync_control_id=control.id,
                    status=control.status,
                    job_id=control.job_id,
                )
            if control is None:
                control = sync_control_repo.create(
                    db,
                    process_type=process_type,
                    id_carga=id_carga,
                    fecha_carga=evento.fecha_carga,
                    evento_carga_proceso_id=evento.id,
                    actor=actor,
                )
            sync_control_id = control.id
        finally:
            db.close()

        handle = self._lock_service.try_acquire_lock(process_type, self.initial_expiry_seconds)
        if handle is None:
            log_batch_event('lock_busy', process_id, process_type=process_type, id_carga=id_carga, sync_control_id=sync_control_id)
            return BatchStartResult(
                process_id=process_id,
                lock_acquired=False,
                message=f"El processType '{process_type}' esta siendo procesado; la solicitud queda pendiente",
                process_type=process_type,
                id_carga=id_carga,
                sync_control_id=sync_control_id,
                status=STATUS_PENDING,
            )

        job_id = self._begin(sync_control_id, handle, process_id, actor)
        if job_id is None:
            return BatchStartResult(
                process_id=process_id,
                lock_acquired=False,
                message='El registro de control ya no esta pendiente',
                process_type=process_type,
                id_carga=id_carga,
                sync_control_id=sync_control_id,
            )
        return BatchStartResult(
            process_id=process_id,
            lock_acquired=True,
            message=f'Proceso de sincronizacion batch iniciado. ProcessId: {process_id}',
            process_type=process_type,
            id_carga=id_carga,
            sync_control_id=sync_control_id,
            status=STATUS_RUNNING,
            job_id=job_id,
        )

    def retry_pending(self, sync_control_id: int, actor: str = 'system') -> BatchStartResult:
        db = self._session_factory()
        try:
            control = sync_control_repo.get_by_id(db, sync_control_id)
        finally:
            db.close()
        if control is None:
            raise NotFoundError(f'No existe el registro de control {sync_control_id}')
        if control.status != STATUS_PENDING:
            raise SyncValidationError(
                f'El registro de control {sync_control_id} esta en estado {control.status}',
                details={'status': control.status},
            )
        handle = self._lock_service.try_acquire_lock(control.process_type, self.initial_expiry_seconds)
        if handle is None:
            raise LockBusyError(
                f"El processType '{control.process_type}' esta siendo procesado",
                details={'sync_control_id': sync_control_id},
            )
        process_id = new_process_id()
        job_id = self._begin(control.id, handle, process_id, actor)
        if job_id is None:
            raise SyncValidationError(f'El registro de control {sync_control_id} ya no esta pendiente')
        return BatchStartResult(
            process_id=process_id,
            lock_acquired=True,
            message=f'Proceso de sincronizacion batch reanudado. ProcessId: {process_id}',
            process_type=control.process_type,
            id_carga=control.id_carga,
            sync_control_id=control.id,
            status=STATUS_RUNNING,
            job_id=job_id,
        )

    def _begin(self, sync_control_id: int, handle: LockHandle, process_id: str, actor: str) -> str | None:
        """PENDING -> RUNNING con el lock ya tomado, y lanza la corrida. None si la fila ya no estaba PENDING."""
        job_id = str(uuid.uuid4())
        try:
            db = self._session_factory()
            try:
                marked = sync_control_repo.mark_running(db, sync_control_id, process_id, job_id, actor)
            finally:
                db.close()
        except SyncError:
            handle.release()
            raise
        if not marked:
            handle.release()
            return None

        log_batch_event('started', process_id, sync_control_id=sync_control_id, job_id=job_id, process_type=handle.process_type)
        if self._executor is None:
            self.run(sync_control_id, handle, process_id, actor)
            return job_id
        try:
            self._executor.submit(self.run, sync_control_id, handle, process_id, actor)
        except RuntimeError as exc:
            # Executor ya cerrado durante el apagado
            self._fail(sync_control_id, CANCELLED_MESSAGE, str(exc), process_id, actor)
            handle.release()
            raise SyncError('No fue posible encolar el proceso', details=str(exc)) from exc
        return job_id

    def _load_work(self, sync_control_id: int) -> tuple[EventoInfo, list[DealerTarget]]:
        db = self._session_factory()
        try:
            control = sync_control_repo.get_by_id(db, sync_control_id)
            if control is None:
                raise NotFoundError(f'No existe el registro de control {sync_control_id}')
            evento = None
            if control.evento_carga_proceso_id is not None:
                evento = dealers_repo.get_evento(db, control.evento_carga_proceso_id)
            if evento is None:
                evento = dealers_repo.get_evento_actual(db, control.process_type, control.id_carga)
            if evento is None:
                raise NotFoundError(f'No existe el evento de carga para {control.process_type}/{control.id_carga}')
            info = EventoInfo(
                id=evento.id,
                proceso=evento.proceso,
                id_carga=evento.id_carga,
                fecha_carga=evento.fecha_carga,
                registros=int(evento.registros or 0),
            )
            dealers = [
                DealerTarget(
                    id=row.id,
                    dealer_bac=row.dealer_bac,
                    nombre_dealer=row.nombre_dealer,
                    dms=row.dms,
                    url_webhook=row.url_webhook,
                    secret_key=row.secret_key,
                    estado_webhook=row.estado_webhook,
                )
                for row in dealers_repo.list_with_webhook(db, evento.id)
            ]
            return info, dealers
        finally:
            db.close()

    def run(self, sync_control_id: int, handle: LockHandle, process_id: str, actor: str = 'system') -> None:
        """Ejecuta una corrida RUNNING. Nunca lanza; el desenlace queda en SyncControl."""
        started = time.monotonic()
        stop_signal = RunStopSignal(self.stop_event)
        heartbeat = LockHeartbeat(
            handle,
            self.renewal_interval_seconds,
            self.renewal_expiry_seconds,
            on_lost=stop_signal.lock_lost.set,
        )
        try:
            with heartbeat:
                evento, dealers = self._load_work(sync_control_id)
                logger.info('[batch_sync:%s] %s dealer(s) loaded for evento %s', process_id, len(dealers), evento.id)
                tally = self._dispatcher.dispatch(sync_control_id, evento, dealers, stop_event=stop_signal, actor=actor)
            if heartbeat.lost:
                logger.warning('[batch_sync:%s] lock was lost during the run', process_id)
                self._fail(
                    sync_control_id,
                    LOCK_LOST_MESSAGE,
                    f'{tally.cancelados} webhook(s) sin enviar',
                    process_id,
                    actor,
                )
                return
            if tally.cancelados:
                self._fail(
                    sync_control_id,
                    CANCELLED_MESSAGE,
                    f'{tally.cancelados} webhook(s) sin enviar',
                    process_id,
                    actor,
                )
                return
            db = self._session_factory()
            try:
                completed = sync_control_repo.mark_completed(db, sync_control_id, actor=actor, **tally.counters())
            finally:
                db.close()
            if not completed:
                logger.warning('[batch_sync:%s] control %s was no longer RUNNING at completion', process_id, sync_control_id)
            log_batch_event(
                'completed',
                process_id,
                sync_control_id=sync_control_id,
                duration_ms=(time.monotonic() - started) * 1000,
                confirmaciones=tally.confirmaciones,
                duplicadas=tally.duplicadas,
                **tally.counters(),
            )
        except Exception as exc:
            logger.exception('[batch_sync:%s] failed', process_id)
            message = exc.message if isinstance(exc, SyncError) else str(exc)
            self._fail(sync_control_id, message or type(exc).__name__, traceback.format_exc()[-4000:], process_id, actor)
        finally:
            handle.release()

    def _fail(self, sync_control_id: int, message: str, details: str | None, process_id: str | None, actor: str) -> None:
        db = self._session_factory()
        try:
            sync_control_repo.mark_failed(db, sync_control_id, message, details, actor)
        except SyncError:
            logger.exception('[batch_sync:%s] could not persist FAILED status', process_id)
        finally:
            db.close()
        log_batch_event('failed', process_id, sync_control_id=sync_control_id, error=message)

    def process_pending(self, limit: int = 20) -> int:
        """Intenta lanzar las filas PENDING, de la mas antigua a la mas reciente."""
        db = self._session_factory()
        try:
            pending = [(row.id, row.process_type) for row in sync_control_repo.list_pending(db, limit)]
        finally:
            db.close()
        launched = 0
        for sync_control_id, process_type in pending:
            if self.stop_event.is_set():
                break
            handle = self._lock_service.try_acquire_lock(process_type, self.initial_expiry_seconds)
            if handle is None:
                continue
            try:
                if self._begin(sync_control_id, handle, new_process_id(), 'scheduler') is not None:
                    launched += 1
            except SyncError as exc:
                logger.error('[batch_sync] could not launch pending control %s: %s', sync_control_id, exc.message)
        return launched

    def recover_stale_running(self) -> int:
        """
        Cierra filas RUNNING huerfanas (sin lock activo) y encola una nueva fila PENDING.
        La nueva corrida omite los dealers ya EXITOSO.
        """
        cutoff = local_now() - timedelta(minutes=max(1, int(settings.stale_running_minutes)))
        db = self._session_factory()
        try:
            stale = sync_control_repo.list_stale_running(db, cutoff)
            recovered = 0
            for row in stale:
                if self._lock_service.is_lock_active(row.process_type):
                    continue
                if not sync_control_repo.mark_failed(
                    db,
                    row.id,
                    INTERRUPTED_MESSAGE,
                    'Ejecucion RUNNING sin lock activo; se encola un nuevo intento',
                    'recovery',
                ):
                    continue
                if sync_control_repo.get_active(db, row.process_type, row.id_carga) is None:
                    sync_control_repo.create(
                        db,
                        process_type=row.process_type,
                        id_carga=row.id_carga,
                        fecha_carga=row.fecha_carga,
                        evento_carga_proceso_id=row.evento_carga_proceso_id,
                        actor='recovery',
                    )
                recovered += 1
                logger.warning('[batch_sync] stale control %s (%s/%s) recovered', row.id, row.process_type, row.id_carga)
            return recovered
        finally:
            db.close()
