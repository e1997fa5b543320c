"""
Planificador de corridas batch.

Un solo objeto por proceso, creado en el arranque y detenido en el apagado.
Es dueno del pool de corridas, del evento de cancelacion y del hilo de
sondeo que reintenta filas PENDING y recupera filas RUNNING huerfanas.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from dealer_sync.core.config import settings
from dealer_sync.db.session import SessionLocal
from dealer_sync.services.batch_sync import BatchSyncOrchestrator
from dealer_sync.services.distributed_lock import DistributedLockService, get_lock_service

logger = logging.getLogger(__name__)


class BatchSyncScheduler:
    def __init__(
        self,
        lock_service: DistributedLockService | None = None,
        session_factory=SessionLocal,
        poll_seconds: float | None = None,
        max_concurrent_runs: int | None = None,
    ):
        self.lock_service = lock_service or get_lock_service()
        self.poll_seconds = max(0.1, float(poll_seconds or settings.scheduler_poll_seconds))
        self.stop_event = threading.Event()
        self.executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_concurrent_runs or settings.scheduler_max_concurrent_runs)),
            thread_name_prefix='batch-sync',
        )
        self.orchestrator = BatchSyncOrchestrator(
            self.lock_service,
            session_factory=session_factory,
            executor=self.executor,
            stop_event=self.stop_event,
        )
        self._thread: threading.Thread | None = None

    def tick(self) -> int:
        """Una pasada: recupera huerfanas y lanza pendientes. Devuelve cuantas corridas lanzo."""
        try:
            self.orchestrator.recover_stale_running()
        except Exception:
            logger.exception('scheduler stale recovery failed; will retry on next tick')
        try:
            return self.orchestrator.process_pending()
        except Exception:
            logger.exception('scheduler pending pass failed; will retry on next tick')
            return 0

    def _loop(self) -> None:
        logger.info('batch sync scheduler started (poll=%ss)', self.poll_seconds)
        while not self.stop_event.is_set():
            self.tick()
            self.stop_event.wait(self.poll_seconds)
        logger.info('batch sync scheduler loop stopped')

    def start(self, poll: bool = True) -> 'BatchSyncScheduler':
        if poll and self._thread is None:
            self._thread = threading.Thread(target=self._loop, name='batch-sync-scheduler', daemon=True)
            self._thread.start()
        return self

    def stop(self, timeout: float | None = 30.0) -> None:
        """Cancela: no se envian webhooks nuevos y las corridas en curso terminan como FAILED."""
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.executor.shutdown(wait=True)
        logger.info('batch sync scheduler stopped')
