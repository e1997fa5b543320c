"""
Envio de webhooks de una corrida de batch.

Cada grupo de webhook se envia en un pool acotado de hilos; los fallos de un
grupo se registran en sus dealers y se cuentan, nunca se propagan. Los
contadores de la corrida se actualizan y persisten bajo un unico lock.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from dealer_sync.core.clock import local_now
from dealer_sync.core.config import settings
from dealer_sync.core.errors import DuplicateConfirmationError, SyncError
from dealer_sync.core.hashing import generate_token_confirmacion
from dealer_sync.db.session import SessionLocal
from dealer_sync.repositories import confirmations as confirmations_repo
from dealer_sync.repositories import snapshot_dealers as dealers_repo
from dealer_sync.repositories import sync_control as sync_control_repo
from dealer_sync.services.payload import (
    DealerTarget,
    EventoInfo,
    WebhookGroup,
    build_webhook_payload,
    group_by_webhook,
)
from dealer_sync.services.webhook_client import WebhookClient, WebhookResult

logger = logging.getLogger(__name__)


@dataclass
class DispatchTally:
    totales: int = 0
    procesados: int = 0
    fallidos: int = 0
    omitidos: int = 0
    cancelados: int = 0
    confirmaciones: int = 0
    duplicadas: int = 0
    errores: list[str] = field(default_factory=list)

    def counters(self) -> dict:
        return {
            'totales': self.totales,
            'procesados': self.procesados,
            'fallidos': self.fallidos,
            'omitidos': self.omitidos,
        }


class _DispatchRun:
    def __init__(self, sync_control_id: int, evento: EventoInfo, tally: DispatchTally, stop_event: threading.Event, actor: str):
        self.sync_control_id = sync_control_id
        self.evento = evento
        self.tally = tally
        self.stop_event = stop_event
        self.actor = actor
        self.lock = threading.Lock()


class WebhookDispatcher:
    def __init__(
        self,
        session_factory=SessionLocal,
        client_factory=WebhookClient,
        max_workers: int | None = None,
        verify_ack: bool | None = None,
        clock=local_now,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self.max_workers = max(1, int(max_workers or settings.dispatch_max_workers))
        self.verify_ack = settings.webhook_verify_ack if verify_ack is None else bool(verify_ack)
        self._clock = clock

    def dispatch(
        self,
        sync_control_id: int,
        evento: EventoInfo,
        dealers: list[DealerTarget],
        stop_event: threading.Event | None = None,
        actor: str = 'system',
    ) -> DispatchTally:
        groups = group_by_webhook(dealers)
        pending = [g for g in groups if g.eligible]
        tally = DispatchTally(totales=len(groups), omitidos=len(groups) - len(pending))
        run = _DispatchRun(sync_control_id, evento, tally, stop_event or threading.Event(), actor)
        logger.info(
            '[dispatch:%s] %s webhook target(s), %s pending, %s already confirmed',
            sync_control_id, tally.totales, len(pending), tally.omitidos,
        )
        with run.lock:
            self._persist_progress(run)

        if not pending:
            return tally

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending)), thread_name_prefix='webhook-dispatch') as pool:
            futures = [pool.submit(self._dispatch_group, run, group) for group in pending]
            for future in as_completed(futures):
                future.result()

        logger.info(
            '[dispatch:%s] finished: procesados=%s fallidos=%s omitidos=%s cancelados=%s',
            sync_control_id, tally.procesados, tally.fallidos, tally.omitidos, tally.cancelados,
        )
        return tally

    def _dispatch_group(self, run: _DispatchRun, group: WebhookGroup) -> None:
        if run.stop_event.is_set():
            with run.lock:
                run.tally.cancelados += 1
            return

        dealers = group.pending_dealers
        evento = run.evento
        fecha_sincronizacion = self._clock()
        tokens = {
            d.id: generate_token_confirmacion(evento.id_carga, d.dealer_bac, evento.proceso, fecha_sincronizacion, evento.registros)
            for d in dealers
        }
        payload = build_webhook_payload(evento, dealers, fecha_sincronizacion, run.tally.totales)

        try:
            result = self._send(group, payload)
            if result.is_success and self.verify_ack and result.ack_token not in tokens.values():
                result.is_success = False
                result.error_message = 'El token de confirmacion recibido no coincide con el calculado'
            if result.is_success:
                self._record_success(run, dealers, tokens, fecha_sincronizacion, result)
                return
            self._record_failure(run, group, dealers, result.error_message or 'Error desconocido', result.attempts)
        except Exception as exc:
            logger.exception('[dispatch:%s] unexpected error on %s', run.sync_control_id, group.url_webhook)
            self._record_failure(run, group, dealers, f'Error inesperado: {exc}', 1)

    def _send(self, group: WebhookGroup, payload: dict) -> WebhookResult:
        client = self._client_factory()
        try:
            return client.send(group.url_webhook, payload, group.secret_key)
        finally:
            client.close()

    def _record_success(
        self,
        run: _DispatchRun,
        dealers: list[DealerTarget],
        tokens: dict[int, str],
        fecha_sincronizacion,
        result: WebhookResult,
    ) -> None:
        created = 0
        duplicates = 0
        db = self._session_factory()
        try:
            # Confirmaciones antes del estado: si algo falla la siguiente corrida reintenta
            for dealer in dealers:
                try:
                    confirmations_repo.create(
                        db,
                        evento_carga_proceso_id=run.evento.id,
                        proceso=run.evento.proceso,
                        dealer_bac=dealer.dealer_bac,
                        nombre_dealer=dealer.nombre_dealer,
                        dms_origen=dealer.dms,
                        fecha_sincronizacion=fecha_sincronizacion,
                        registros_sincronizados=run.evento.registros,
                        token_confirmacion=tokens[dealer.id],
                        actor=run.actor,
                    )
                    created += 1
                except DuplicateConfirmationError as exc:
                    duplicates += 1
                    logger.warning('[dispatch:%s] %s', run.sync_control_id, exc.message)
            dealers_repo.mark_webhook_exitoso(
                db,
                tokens,
                fecha_sincronizacion=fecha_sincronizacion,
                intentos=result.attempts,
                actor=run.actor,
            )
        except SyncError as exc:
            logger.error('[dispatch:%s] could not record success: %s', run.sync_control_id, exc.message)
            with run.lock:
                run.tally.confirmaciones += created
                run.tally.duplicadas += duplicates
            self._record_failure_counted(run, [d.id for d in dealers], f'Error registrando confirmacion: {exc.message}', result.attempts)
            return
        finally:
            db.close()

        with run.lock:
            run.tally.procesados += 1
            run.tally.confirmaciones += created
            run.tally.duplicadas += duplicates
            self._persist_progress(run)

    def _record_failure(self, run: _DispatchRun, group: WebhookGroup, dealers: list[DealerTarget], error_message: str, attempts: int) -> None:
        logger.warning('[dispatch:%s] webhook %s failed: %s', run.sync_control_id, group.url_webhook, error_message)
        self._record_failure_counted(run, [d.id for d in dealers], error_message, attempts)

    def _record_failure_counted(self, run: _DispatchRun, dealer_ids: list[int], error_message: str, attempts: int) -> None:
        db = self._session_factory()
        try:
            dealers_repo.mark_webhook_fallido(db, dealer_ids, error_message=error_message, intentos=attempts, actor=run.actor)
        except SyncError as exc:
            logger.error('[dispatch:%s] could not record failure: %s', run.sync_control_id, exc.message)
        finally:
            db.close()
        with run.lock:
            run.tally.fallidos += 1
            run.tally.errores.append(error_message)
            self._persist_progress(run)

    def _persist_progress(self, run: _DispatchRun) -> None:
        """Debe llamarse con ``run.lock`` tomado."""
        db = self._session_factory()
        try:
            sync_control_repo.update_progress(db, run.sync_control_id, actor=run.actor, **run.tally.counters())
        except SyncError as exc:
            logger.warning('[dispatch:%s] progress not persisted: %s', run.sync_control_id, exc.message)
        finally:
            db.close()
