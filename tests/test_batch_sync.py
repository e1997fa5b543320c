import threading
import time
import unittest
from datetime import timedelta
from unittest.mock import patch

import redis
from helpers import FakeWebhookClient, TempDatabase, seed_evento, timeout_result

from dealer_sync.core.clock import local_now
from dealer_sync.core.errors import DataAccessError, LockBusyError, NotFoundError, SyncValidationError
from dealer_sync.models.sync import (
    EVENTO_SINCRONIZADA,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    WEBHOOK_EXITOSO,
    EventoCargaSnapshotDealer,
    SincCargaProcesoDealer,
    SyncControl,
)
from dealer_sync.repositories import sync_control as sync_control_repo
from dealer_sync.services.batch_sync import (
    CANCELLED_MESSAGE,
    INTERRUPTED_MESSAGE,
    LOCK_LOST_MESSAGE,
    BatchSyncOrchestrator,
    RunStopSignal,
    new_process_id,
)
from dealer_sync.services.distributed_lock import DistributedLockService, InMemoryLockStore, lock_key
from dealer_sync.services.scheduler import BatchSyncScheduler
from dealer_sync.services.webhook_dispatcher import WebhookDispatcher

THREE_DEALERS = [{'dealer_bac': 'BAC001'}, {'dealer_bac': 'BAC002'}, {'dealer_bac': 'BAC003'}]


class TakeoverLockStore(InMemoryLockStore):
    """Permite simular otro propietario y fallos de conexion al renovar."""

    def __init__(self, renew_failures=0):
        super().__init__()
        self.renew_failures = renew_failures
        self.renew_calls = 0

    def take_over(self, key, value):
        with self._lock:
            self._entries[key] = (value, self._clock() + 60)

    def compare_and_expire(self, key, value, ttl_ms):
        self.renew_calls += 1
        if self.renew_calls <= self.renew_failures:
            raise redis.exceptions.ConnectionError('connection reset')
        return super().compare_and_expire(key, value, ttl_ms)


class BatchSyncTestCase(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.SessionLocal = self.database.SessionLocal
        self.lock_service = DistributedLockService(InMemoryLockStore())
        self.client = FakeWebhookClient({'https://bac003.example.com/hook': timeout_result()})
        self.dispatcher = WebhookDispatcher(
            session_factory=self.SessionLocal,
            client_factory=lambda: self.client,
            max_workers=2,
        )
        self.orchestrator = BatchSyncOrchestrator(
            self.lock_service,
            dispatcher=self.dispatcher,
            session_factory=self.SessionLocal,
            executor=None,
            process_types=['ProductList'],
        )

    def tearDown(self):
        self.database.close()

    def _controls(self):
        db = self.SessionLocal()
        try:
            return db.query(SyncControl).order_by(SyncControl.id).all()
        finally:
            db.close()

    def _control(self, sync_control_id):
        db = self.SessionLocal()
        try:
            return db.query(SyncControl).filter(SyncControl.id == sync_control_id).first()
        finally:
            db.close()


class StartBatchSyncTests(BatchSyncTestCase):
    def test_run_completes_with_counters_and_confirmations(self):
        evento_id = seed_evento(self.SessionLocal, dealers=THREE_DEALERS)

        result = self.orchestrator.start_batch_sync('ProductList', 'CARGA1', actor='tester')

        self.assertTrue(result.lock_acquired)
        self.assertEqual(len(result.process_id), 16)
        control = self._control(result.sync_control_id)
        self.assertEqual(control.status, STATUS_COMPLETED)
        self.assertEqual(
            (control.webhooks_totales, control.webhooks_procesados, control.webhooks_fallidos, control.webhooks_omitidos),
            (3, 2, 1, 0),
        )
        self.assertIsNotNone(control.fecha_inicio)
        self.assertIsNotNone(control.fecha_fin)
        self.assertEqual(control.process_id, result.process_id)
        db = self.SessionLocal()
        try:
            confirmed = (
                db.query(SincCargaProcesoDealer)
                .filter(SincCargaProcesoDealer.evento_carga_proceso_id == evento_id)
                .all()
            )
            self.assertEqual(sorted(r.dealer_bac for r in confirmed), ['BAC001', 'BAC002'])
        finally:
            db.close()
        self.assertFalse(self.lock_service.is_lock_active('ProductList'))

    def test_second_run_skips_confirmed_dealers(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        self.orchestrator.start_batch_sync('ProductList', 'CARGA1')
        self.client.results_by_url = {}
        self.client.calls = []

        result = self.orchestrator.start_batch_sync('ProductList', 'CARGA1')

        control = self._control(result.sync_control_id)
        self.assertEqual(control.status, STATUS_COMPLETED)
        self.assertEqual((control.webhooks_procesados, control.webhooks_omitidos), (1, 2))
        self.assertEqual([c[0] for c in self.client.calls], ['https://bac003.example.com/hook'])

    def test_busy_lock_leaves_request_pending(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        holder = self.lock_service.try_acquire_lock('ProductList', 60)

        result = self.orchestrator.start_batch_sync('ProductList', 'CARGA1')

        self.assertFalse(result.lock_acquired)
        self.assertEqual(result.status, STATUS_PENDING)
        self.assertEqual(self._control(result.sync_control_id).status, STATUS_PENDING)
        self.assertEqual(self.client.calls, [])

        again = self.orchestrator.start_batch_sync('ProductList', 'CARGA1')
        self.assertEqual(again.sync_control_id, result.sync_control_id)
        self.assertEqual(len(self._controls()), 1)

        holder.release()
        self.assertEqual(self.orchestrator.process_pending(), 1)
        self.assertEqual(self._control(result.sync_control_id).status, STATUS_COMPLETED)

    def test_running_row_blocks_new_request(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        db = self.SessionLocal()
        try:
            control = sync_control_repo.create(
                db, process_type='ProductList', id_carga='CARGA1', fecha_carga=None, evento_carga_proceso_id=None, actor='t'
            )
            sync_control_repo.mark_running(db, control.id, 'PIDRUNNING', 'JOB', 't')
            control_id = control.id
        finally:
            db.close()

        result = self.orchestrator.start_batch_sync('ProductList', 'CARGA1')

        self.assertFalse(result.lock_acquired)
        self.assertEqual(result.sync_control_id, control_id)
        self.assertEqual(result.process_id, 'PIDRUNNING')
        self.assertEqual(result.status, STATUS_RUNNING)

    def test_repository_failure_marks_failed_and_releases_lock(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        with patch(
            'dealer_sync.services.batch_sync.dealers_repo.list_with_webhook',
            side_effect=DataAccessError('Error de acceso a datos en snapshot_dealers.list_with_webhook'),
        ):
            result = self.orchestrator.start_batch_sync('ProductList', 'CARGA1')

        self.assertTrue(result.lock_acquired)
        control = self._control(result.sync_control_id)
        self.assertEqual(control.status, STATUS_FAILED)
        self.assertIn('snapshot_dealers.list_with_webhook', control.error_message)
        self.assertIsNotNone(control.fecha_fin)
        self.assertFalse(self.lock_service.is_lock_active('ProductList'))

    def test_stop_event_fails_run_as_cancelled(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        self.orchestrator.stop_event.set()

        result = self.orchestrator.start_batch_sync('ProductList', 'CARGA1')

        control = self._control(result.sync_control_id)
        self.assertEqual(control.status, STATUS_FAILED)
        self.assertEqual(control.error_message, CANCELLED_MESSAGE)
        self.assertEqual(self.client.calls, [])
        self.assertFalse(self.lock_service.is_lock_active('ProductList'))

    def test_lost_lock_stops_dispatch_and_fails_run(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        store = TakeoverLockStore()
        lock_service = DistributedLockService(store)
        signals = []

        class RecordingStopSignal(RunStopSignal):
            def __init__(self, shutdown):
                super().__init__(shutdown)
                signals.append(self)

        class TakeoverClient(FakeWebhookClient):
            def send(self, url, payload, secret_key):
                if not self.calls:
                    store.take_over(lock_key('ProductList'), 'other-node')
                    signals[0].lock_lost.wait(2)
                return super().send(url, payload, secret_key)

        client = TakeoverClient({})
        orchestrator = BatchSyncOrchestrator(
            lock_service,
            dispatcher=WebhookDispatcher(session_factory=self.SessionLocal, client_factory=lambda: client, max_workers=1),
            session_factory=self.SessionLocal,
            executor=None,
            process_types=['ProductList'],
        )
        orchestrator.renewal_interval_seconds = 0.01

        with patch('dealer_sync.services.batch_sync.RunStopSignal', RecordingStopSignal):
            result = orchestrator.start_batch_sync('ProductList', 'CARGA1', actor='tester')

        self.assertTrue(signals[0].lock_lost.is_set())
        control = self._control(result.sync_control_id)
        self.assertEqual(control.status, STATUS_FAILED)
        self.assertEqual(control.error_message, LOCK_LOST_MESSAGE)
        self.assertEqual(len(client.calls), 1)
        self.assertTrue(lock_service.is_lock_active('ProductList'))

    def test_transient_renewal_error_still_completes(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        store = TakeoverLockStore(renew_failures=1)
        orchestrator = BatchSyncOrchestrator(
            DistributedLockService(store),
            dispatcher=self.dispatcher,
            session_factory=self.SessionLocal,
            executor=None,
            process_types=['ProductList'],
        )
        orchestrator.renewal_interval_seconds = 0.01

        class SlowClient(FakeWebhookClient):
            def send(self, url, payload, secret_key):
                if not self.calls:
                    time.sleep(0.2)
                return super().send(url, payload, secret_key)

        self.client = SlowClient({})
        result = orchestrator.start_batch_sync('ProductList', 'CARGA1')

        self.assertGreater(store.renew_calls, 1)
        self.assertEqual(self._control(result.sync_control_id).status, STATUS_COMPLETED)

    def test_synchronized_load_is_rejected(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS, estatus=EVENTO_SINCRONIZADA)
        with self.assertRaises(SyncValidationError):
            self.orchestrator.start_batch_sync('ProductList', 'CARGA1')
        self.assertEqual(self._controls(), [])

    def test_unknown_load_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.orchestrator.start_batch_sync('ProductList', 'NOEXISTE')

    def test_validation(self):
        with self.assertRaises(SyncValidationError):
            self.orchestrator.start_batch_sync('', 'CARGA1')
        with self.assertRaises(SyncValidationError):
            self.orchestrator.start_batch_sync('ProductList', '   ')
        with self.assertRaises(SyncValidationError) as ctx:
            self.orchestrator.start_batch_sync('CampaignList', 'CARGA1')
        self.assertEqual(ctx.exception.details['implemented'], ['ProductList'])

    def test_new_process_id_format(self):
        process_id = new_process_id()
        self.assertEqual(len(process_id), 16)
        self.assertEqual(process_id, process_id.upper())


class RetryAndRecoveryTests(BatchSyncTestCase):
    def _pending_control(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        holder = self.lock_service.try_acquire_lock('ProductList', 60)
        result = self.orchestrator.start_batch_sync('ProductList', 'CARGA1')
        return holder, result.sync_control_id

    def test_retry_pending_raises_when_lock_busy(self):
        holder, control_id = self._pending_control()
        with self.assertRaises(LockBusyError):
            self.orchestrator.retry_pending(control_id)
        holder.release()

        result = self.orchestrator.retry_pending(control_id, actor='tester')

        self.assertTrue(result.lock_acquired)
        self.assertEqual(self._control(control_id).status, STATUS_COMPLETED)

    def test_retry_rejects_non_pending_rows(self):
        holder, control_id = self._pending_control()
        holder.release()
        self.orchestrator.retry_pending(control_id)
        with self.assertRaises(SyncValidationError):
            self.orchestrator.retry_pending(control_id)
        with self.assertRaises(NotFoundError):
            self.orchestrator.retry_pending(9999)

    def _stale_running(self):
        evento_id = seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        db = self.SessionLocal()
        try:
            control = sync_control_repo.create(
                db, process_type='ProductList', id_carga='CARGA1', fecha_carga=None, evento_carga_proceso_id=evento_id, actor='t'
            )
            sync_control_repo.mark_running(db, control.id, 'PIDSTALE', 'JOB', 't')
            db.query(SyncControl).filter(SyncControl.id == control.id).update(
                {'fecha_inicio': local_now() - timedelta(hours=2)}, synchronize_session=False
            )
            db.commit()
            return control.id
        finally:
            db.close()

    def test_orphaned_running_row_is_failed_and_requeued(self):
        stale_id = self._stale_running()

        self.assertEqual(self.orchestrator.recover_stale_running(), 1)

        controls = self._controls()
        self.assertEqual(len(controls), 2)
        self.assertEqual(controls[0].id, stale_id)
        self.assertEqual(controls[0].status, STATUS_FAILED)
        self.assertEqual(controls[0].error_message, INTERRUPTED_MESSAGE)
        self.assertEqual(controls[1].status, STATUS_PENDING)

    def test_running_row_with_live_lock_is_left_alone(self):
        stale_id = self._stale_running()
        holder = self.lock_service.try_acquire_lock('ProductList', 60)

        self.assertEqual(self.orchestrator.recover_stale_running(), 0)
        self.assertEqual(self._control(stale_id).status, STATUS_RUNNING)
        holder.release()


class ActiveControlUniquenessTests(BatchSyncTestCase):
    def _create(self, db):
        return sync_control_repo.create(
            db, process_type='ProductList', id_carga='CARGA1', fecha_carga=None, evento_carga_proceso_id=None, actor='t'
        )

    def test_create_returns_existing_active_row(self):
        db = self.SessionLocal()
        try:
            first = self._create(db)
            second = self._create(db)
            self.assertEqual(second.id, first.id)
            self.assertEqual(second.status, STATUS_PENDING)
        finally:
            db.close()
        self.assertEqual(len(self._controls()), 1)

    def test_closed_row_allows_a_new_active_row(self):
        db = self.SessionLocal()
        try:
            first = self._create(db)
            sync_control_repo.mark_running(db, first.id, 'PID', 'JOB', 't')
            sync_control_repo.mark_failed(db, first.id, 'boom')
            second = self._create(db)
        finally:
            db.close()
        self.assertNotEqual(second.id, first.id)
        controls = self._controls()
        self.assertEqual([c.status for c in controls], [STATUS_FAILED, STATUS_PENDING])
        self.assertIsNone(controls[0].active_key)
        self.assertEqual(controls[1].active_key, 'ProductList|CARGA1')

    def test_concurrent_requests_share_one_pending_row(self):
        seed_evento(self.SessionLocal, dealers=THREE_DEALERS)
        holder = self.lock_service.try_acquire_lock('ProductList', 60)
        barrier = threading.Barrier(2, timeout=5)
        guard = threading.Lock()
        lookups = []
        original_get_active = sync_control_repo.get_active

        def racing_get_active(db, process_type, id_carga):
            row = original_get_active(db, process_type, id_carga)
            with guard:
                lookups.append(row)
                first_round = len(lookups) <= 2
            if first_round:
                barrier.wait()
            return row

        results = []

        def _request():
            results.append(self.orchestrator.start_batch_sync('ProductList', 'CARGA1'))

        with patch('dealer_sync.repositories.sync_control.get_active', side_effect=racing_get_active):
            threads = [threading.Thread(target=_request) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        holder.release()

        self.assertEqual(len(results), 2)
        self.assertEqual(lookups[:2], [None, None])
        self.assertEqual(len({r.sync_control_id for r in results}), 1)
        self.assertEqual([c.status for c in self._controls()], [STATUS_PENDING])


class SchedulerTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.SessionLocal = self.database.SessionLocal
        self.lock_service = DistributedLockService(InMemoryLockStore())
        self.client = FakeWebhookClient({})
        self.scheduler = BatchSyncScheduler(
            lock_service=self.lock_service,
            session_factory=self.SessionLocal,
            poll_seconds=0.05,
            max_concurrent_runs=2,
        )
        self.scheduler.orchestrator.process_types = ['ProductList']
        self.scheduler.orchestrator._dispatcher = WebhookDispatcher(
            session_factory=self.SessionLocal,
            client_factory=lambda: self.client,
        )

    def tearDown(self):
        self.scheduler.stop(timeout=5)
        self.database.close()

    def _status(self, sync_control_id):
        db = self.SessionLocal()
        try:
            return db.query(SyncControl).filter(SyncControl.id == sync_control_id).first().status
        finally:
            db.close()

    def test_tick_launches_pending_rows_on_the_executor(self):
        evento_id = seed_evento(self.SessionLocal, dealers=[{'dealer_bac': 'BAC001'}])
        db = self.SessionLocal()
        try:
            control_id = sync_control_repo.create(
                db, process_type='ProductList', id_carga='CARGA1', fecha_carga=None, evento_carga_proceso_id=evento_id, actor='t'
            ).id
        finally:
            db.close()

        self.assertEqual(self.scheduler.tick(), 1)
        self.scheduler.executor.shutdown(wait=True)

        self.assertEqual(self._status(control_id), STATUS_COMPLETED)
        db = self.SessionLocal()
        try:
            row = db.query(EventoCargaSnapshotDealer).filter(EventoCargaSnapshotDealer.dealer_bac == 'BAC001').first()
            self.assertEqual(row.estado_webhook, WEBHOOK_EXITOSO)
        finally:
            db.close()

    def test_tick_with_nothing_pending(self):
        self.assertEqual(self.scheduler.tick(), 0)

    def test_stop_cancels_in_flight_run(self):
        seed_evento(self.SessionLocal, dealers=[{'dealer_bac': 'BAC001'}, {'dealer_bac': 'BAC002'}])
        entered = threading.Event()
        release = threading.Event()
        original_send = self.client.send

        def _slow_send(url, payload, secret_key):
            entered.set()
            release.wait(5)
            return original_send(url, payload, secret_key)

        self.client.send = _slow_send
        self.scheduler.orchestrator._dispatcher.max_workers = 1

        result = self.scheduler.orchestrator.start_batch_sync('ProductList', 'CARGA1')
        self.assertTrue(entered.wait(5))
        self.scheduler.stop_event.set()
        release.set()
        self.scheduler.stop(timeout=5)

        self.assertEqual(self._status(result.sync_control_id), STATUS_FAILED)
        self.assertFalse(self.lock_service.is_lock_active('ProductList'))

    def test_start_without_polling_has_no_thread(self):
        self.assertIs(self.scheduler.start(poll=False), self.scheduler)
        self.assertIsNone(self.scheduler._thread)


if __name__ == '__main__':
    unittest.main()
