import threading
import time
import unittest
from unittest.mock import MagicMock

import helpers  # noqa: F401
import redis

from dealer_sync.core.errors import SyncValidationError
from dealer_sync.services.distributed_lock import (
    DistributedLockService,
    InMemoryLockStore,
    LockHeartbeat,
    RedisLockStore,
    lock_key,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FlakyLockStore(InMemoryLockStore):
    """Las primeras ``failures`` renovaciones fallan con un error de conexion."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures
        self.renew_calls = 0

    def compare_and_expire(self, key, value, ttl_ms):
        self.renew_calls += 1
        if self.renew_calls <= self.failures:
            raise redis.exceptions.ConnectionError('connection reset')
        return super().compare_and_expire(key, value, ttl_ms)


class InMemoryLockTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryLockStore(clock=self.clock)
        self.service = DistributedLockService(self.store)

    def test_acquire_is_exclusive_while_alive(self):
        handle = self.service.try_acquire_lock('ProductList', 10)
        self.assertIsNotNone(handle)
        self.assertIsNone(self.service.try_acquire_lock('ProductList', 10))
        self.assertTrue(self.service.is_lock_active('ProductList'))

    def test_process_types_are_independent(self):
        self.assertIsNotNone(self.service.try_acquire_lock('ProductList', 10))
        self.assertIsNotNone(self.service.try_acquire_lock('CampaignList', 10))

    def test_expired_lock_can_be_taken_over(self):
        self.service.try_acquire_lock('ProductList', 10)
        self.clock.advance(11)
        self.assertFalse(self.service.is_lock_active('ProductList'))
        self.assertIsNotNone(self.service.try_acquire_lock('ProductList', 10))

    def test_renew_by_stale_holder_returns_false(self):
        old = self.service.try_acquire_lock('ProductList', 10)
        self.clock.advance(11)
        new = self.service.try_acquire_lock('ProductList', 10)
        self.assertIsNotNone(new)
        self.assertFalse(self.service.renew_lock('ProductList', old.lock_value, 30))
        self.assertTrue(self.service.renew_lock('ProductList', new.lock_value, 30))

    def test_renew_extends_expiry(self):
        handle = self.service.try_acquire_lock('ProductList', 10)
        self.clock.advance(8)
        self.assertTrue(handle.renew(10))
        self.clock.advance(8)
        self.assertTrue(self.service.is_lock_active('ProductList'))

    def test_stale_release_keeps_new_owner_lock(self):
        old = self.service.try_acquire_lock('ProductList', 10)
        self.clock.advance(11)
        new = self.service.try_acquire_lock('ProductList', 10)
        self.assertFalse(old.release())
        self.assertTrue(self.service.is_lock_active('ProductList'))
        self.assertIsNone(self.service.try_acquire_lock('ProductList', 10))
        self.assertTrue(new.release())
        self.assertFalse(self.service.is_lock_active('ProductList'))

    def test_release_is_idempotent(self):
        handle = self.service.try_acquire_lock('ProductList', 10)
        self.assertTrue(handle.release())
        self.assertFalse(handle.release())
        self.assertTrue(handle.released)
        self.assertFalse(handle.renew())

    def test_context_manager_releases(self):
        with self.service.try_acquire_lock('ProductList', 10):
            self.assertTrue(self.service.is_lock_active('ProductList'))
        self.assertFalse(self.service.is_lock_active('ProductList'))

    def test_blank_process_type_is_rejected(self):
        with self.assertRaises(SyncValidationError):
            self.service.try_acquire_lock('  ', 10)

    def test_lock_key_format(self):
        self.assertEqual(lock_key('ProductList'), 'lock:sync:ProductList')


class LockContentionTests(unittest.TestCase):
    def test_single_winner_under_concurrent_attempts(self):
        service = DistributedLockService(InMemoryLockStore())
        barrier = threading.Barrier(16)
        winners = []
        guard = threading.Lock()

        def _attempt():
            barrier.wait()
            handle = service.try_acquire_lock('ProductList', 30)
            if handle is not None:
                with guard:
                    winners.append(handle)

        threads = [threading.Thread(target=_attempt) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(winners), 1)


class LockStoreFailureTests(unittest.TestCase):
    def setUp(self):
        self.store = MagicMock()
        error = redis.exceptions.ConnectionError('down')
        self.store.set_if_absent.side_effect = error
        self.store.exists.side_effect = error
        self.store.compare_and_expire.side_effect = error
        self.store.compare_and_delete.side_effect = error
        self.store.ping.side_effect = error
        self.service = DistributedLockService(self.store)

    def test_acquire_fails_closed(self):
        self.assertIsNone(self.service.try_acquire_lock('ProductList', 10))

    def test_is_lock_active_assumes_active(self):
        self.assertTrue(self.service.is_lock_active('ProductList'))

    def test_renew_and_release_report_false(self):
        self.assertFalse(self.service.renew_lock('ProductList', 'abc', 10))
        self.assertFalse(self.service.release_lock('ProductList', 'abc'))
        self.assertFalse(self.service.ping())

    def test_strict_renew_propagates_store_error(self):
        with self.assertRaises(redis.exceptions.ConnectionError):
            self.service.renew_lock('ProductList', 'abc', 10, strict=True)


class RedisLockStoreTests(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.renew_script = MagicMock(return_value=1)
        self.release_script = MagicMock(return_value=1)
        self.client.register_script.side_effect = [self.renew_script, self.release_script]
        self.store = RedisLockStore(self.client)

    def test_acquire_uses_set_nx_with_expiry(self):
        self.client.set.return_value = True
        service = DistributedLockService(self.store)
        handle = service.try_acquire_lock('ProductList', 600)
        self.assertIsNotNone(handle)
        self.client.set.assert_called_once_with('lock:sync:ProductList', handle.lock_value, nx=True, px=600000)

    def test_acquire_returns_none_when_key_exists(self):
        self.client.set.return_value = None
        self.assertIsNone(DistributedLockService(self.store).try_acquire_lock('ProductList', 600))

    def test_renew_and_release_compare_owner_value(self):
        self.assertTrue(self.store.compare_and_expire('lock:sync:ProductList', 'owner', 5000))
        self.renew_script.assert_called_once_with(keys=['lock:sync:ProductList'], args=['owner', 5000])
        self.assertTrue(self.store.compare_and_delete('lock:sync:ProductList', 'owner'))
        self.release_script.assert_called_once_with(keys=['lock:sync:ProductList'], args=['owner'])

    def test_release_of_foreign_lock_reports_false(self):
        self.release_script.return_value = 0
        self.assertFalse(self.store.compare_and_delete('lock:sync:ProductList', 'other'))

    def test_exists(self):
        self.client.exists.return_value = 0
        self.assertFalse(self.store.exists('lock:sync:ProductList'))


class LockHeartbeatTests(unittest.TestCase):
    def _wait_for(self, predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    def test_heartbeat_renews_while_running(self):
        handle = MagicMock()
        handle.process_type = 'ProductList'
        handle.renew.return_value = True
        with LockHeartbeat(handle, 0.01, 60) as heartbeat:
            self.assertTrue(self._wait_for(lambda: handle.renew.call_count >= 2))
        self.assertFalse(heartbeat.lost)
        handle.renew.assert_called_with(60, strict=True)

    def test_heartbeat_stops_when_lock_is_lost(self):
        store = InMemoryLockStore()
        service = DistributedLockService(store)
        handle = service.try_acquire_lock('ProductList', 60)
        lost_event = threading.Event()
        heartbeat = LockHeartbeat(handle, 0.01, 60, on_lost=lost_event.set).start()
        try:
            store.compare_and_delete(lock_key('ProductList'), handle.lock_value)
            store.set_if_absent(lock_key('ProductList'), 'someone-else', 60000)
            self.assertTrue(self._wait_for(lambda: heartbeat.lost))
        finally:
            heartbeat.stop()
        self.assertTrue(lost_event.is_set())
        self.assertTrue(service.is_lock_active('ProductList'))
        self.assertFalse(handle.release())

    def test_transient_store_error_does_not_lose_the_lock(self):
        store = FlakyLockStore(failures=1)
        service = DistributedLockService(store)
        handle = service.try_acquire_lock('ProductList', 60)
        lost_event = threading.Event()
        with LockHeartbeat(handle, 0.02, 60, on_lost=lost_event.set) as heartbeat:
            self.assertTrue(self._wait_for(lambda: store.renew_calls >= 3))
        self.assertFalse(heartbeat.lost)
        self.assertFalse(lost_event.is_set())
        self.assertTrue(service.is_lock_active('ProductList'))
        self.assertTrue(handle.release())

    def test_store_errors_past_expiry_lose_the_lock(self):
        store = FlakyLockStore(failures=10**6)
        service = DistributedLockService(store)
        handle = service.try_acquire_lock('ProductList', 60)
        handle.expires_at = time.monotonic() + 0.1
        lost_event = threading.Event()
        heartbeat = LockHeartbeat(handle, 0.01, 60, on_lost=lost_event.set).start()
        try:
            self.assertTrue(self._wait_for(lambda: heartbeat.lost))
        finally:
            heartbeat.stop()
        self.assertTrue(lost_event.is_set())
        self.assertGreater(store.renew_calls, 1)


if __name__ == '__main__':
    unittest.main()
