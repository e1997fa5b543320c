"""
Lock distribuido por tipo de proceso (clave ``lock:sync:<processType>``).

El valor almacenado es un token de propietario aleatorio. Adquirir es un unico
SET NX con expiracion; renovar y liberar comparan el token antes de tocar la
clave, de modo que un propietario vencido nunca extiende ni borra el lock de
otro.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid

import redis

from dealer_sync.core.config import settings
from dealer_sync.core.errors import SyncValidationError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = 'lock:sync:'
DEFAULT_EXPIRY_SECONDS = 60

# Errores de backend que no deben escapar del servicio
LOCK_STORE_ERRORS = (redis.exceptions.RedisError, OSError)


def lock_key(process_type: str) -> str:
    name = str(process_type or '').strip()
    if not name:
        raise SyncValidationError('El tipo de proceso es requerido para el lock')
    return f'{LOCK_KEY_PREFIX}{name}'


class RedisLockStore:
    _RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""
    _RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

    def __init__(self, client: redis.Redis):
        self._client = client
        self._renew = client.register_script(self._RENEW_SCRIPT)
        self._release = client.register_script(self._RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 5.0) -> 'RedisLockStore':
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client)

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        return bool(self._client.set(key, value, nx=True, px=ttl_ms))

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def compare_and_expire(self, key: str, value: str, ttl_ms: int) -> bool:
        return bool(self._renew(keys=[key], args=[value, ttl_ms]))

    def compare_and_delete(self, key: str, value: str) -> bool:
        return bool(self._release(keys=[key], args=[value]))

    def ping(self) -> bool:
        return bool(self._client.ping())


class InMemoryLockStore:
    """Mapa de locks en proceso para despliegues de un solo nodo y pruebas."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live_value(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._entries[key] = (value, self._clock() + ttl_ms / 1000.0)
            return True

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None

    def compare_and_expire(self, key: str, value: str, ttl_ms: int) -> bool:
        with self._lock:
            if self._live_value(key) != value:
                return False
            self._entries[key] = (value, self._clock() + ttl_ms / 1000.0)
            return True

    def compare_and_delete(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live_value(key) != value:
                return False
            del self._entries[key]
            return True

    def ping(self) -> bool:
        return True


class LockHandle:
    """Lock adquirido. ``release()`` es idempotente y tambien se invoca al salir del ``with``."""

    def __init__(self, service: 'DistributedLockService', process_type: str, lock_value: str, expiry_seconds: int):
        self._service = service
        self.process_type = process_type
        self.lock_value = lock_value
        self.expiry_seconds = expiry_seconds
        # Vencimiento local (time.monotonic) segun la ultima renovacion confirmada
        self.expires_at = time.monotonic() + expiry_seconds
        self._released = False
        self._guard = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def renew(self, expiry_seconds: int | None = None, strict: bool = False) -> bool:
        """Extiende la expiracion si el lock sigue siendo propio.

        Con ``strict=True`` los errores del store se propagan en lugar de
        devolver False, para distinguir un fallo transitorio de una perdida.
        """
        if self._released:
            return False
        expiry = expiry_seconds or self.expiry_seconds
        started = time.monotonic()
        renewed = self._service.renew_lock(self.process_type, self.lock_value, expiry, strict=strict)
        if renewed:
            self.expires_at = started + expiry
        return renewed

    def release(self) -> bool:
        with self._guard:
            if self._released:
                return False
            self._released = True
        return self._service.release_lock(self.process_type, self.lock_value)

    def __enter__(self) -> 'LockHandle':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class DistributedLockService:
    def __init__(self, store, default_expiry_seconds: int = DEFAULT_EXPIRY_SECONDS):
        self._store = store
        self.default_expiry_seconds = default_expiry_seconds

    def try_acquire_lock(self, process_type: str, expiry_seconds: int | None = None) -> LockHandle | None:
        key = lock_key(process_type)
        expiry = int(expiry_seconds or self.default_expiry_seconds)
        lock_value = uuid.uuid4().hex
        try:
            acquired = self._store.set_if_absent(key, lock_value, expiry * 1000)
        except LOCK_STORE_ERRORS:
            logger.exception('[lock:%s] lock store unavailable, acquisition refused', process_type)
            return None
        if not acquired:
            logger.info('[lock:%s] lock busy', process_type)
            return None
        logger.info('[lock:%s] acquired (expiry=%ss)', process_type, expiry)
        return LockHandle(self, process_type.strip(), lock_value, expiry)

    def is_lock_active(self, process_type: str) -> bool:
        key = lock_key(process_type)
        try:
            return self._store.exists(key)
        except LOCK_STORE_ERRORS:
            # Ante la duda se asume activo
            logger.warning('[lock:%s] could not check lock, assuming active', process_type, exc_info=True)
            return True

    def renew_lock(self, process_type: str, lock_value: str, expiry_seconds: int, strict: bool = False) -> bool:
        key = lock_key(process_type)
        try:
            renewed = self._store.compare_and_expire(key, lock_value, int(expiry_seconds) * 1000)
        except LOCK_STORE_ERRORS:
            logger.warning('[lock:%s] renew failed', process_type, exc_info=True)
            if strict:
                raise
            return False
        if not renewed:
            logger.warning('[lock:%s] renew refused, lock no longer owned', process_type)
        return renewed

    def release_lock(self, process_type: str, lock_value: str) -> bool:
        key = lock_key(process_type)
        try:
            released = self._store.compare_and_delete(key, lock_value)
        except LOCK_STORE_ERRORS:
            logger.exception('[lock:%s] release failed, lock will expire on its own', process_type)
            return False
        if released:
            logger.info('[lock:%s] released', process_type)
        else:
            logger.warning('[lock:%s] release skipped, lock no longer owned', process_type)
        return released

    def ping(self) -> bool:
        try:
            return self._store.ping()
        except LOCK_STORE_ERRORS:
            return False


class LockHeartbeat:
    """Renueva un lock en segundo plano mientras dura un batch.

    Un error del store no detiene la renovacion: se reintenta en el siguiente
    intervalo. El lock se da por perdido solo cuando el store rechaza la
    renovacion (otro propietario) o cuando el vencimiento local pasa sin que
    ninguna renovacion haya tenido exito. En ese caso se invoca ``on_lost``.
    """

    def __init__(self, handle: LockHandle, interval_seconds: float, expiry_seconds: int, on_lost=None):
        self._handle = handle
        self._interval = max(0.01, float(interval_seconds))
        self._expiry = int(expiry_seconds)
        self._on_lost = on_lost
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f'lock-heartbeat-{handle.process_type}',
            daemon=True,
        )
        self.lost = False

    def _run(self) -> None:
        process_type = self._handle.process_type
        while not self._stop.wait(self._interval):
            try:
                renewed = self._handle.renew(self._expiry, strict=True)
            except LOCK_STORE_ERRORS:
                if time.monotonic() < self._handle.expires_at:
                    logger.warning('[lock:%s] heartbeat renewal error, retrying', process_type)
                    continue
                self._mark_lost('lock expired while the store was unreachable')
                return
            if not renewed:
                self._mark_lost('renewal refused, lock no longer owned')
                return

    def _mark_lost(self, reason: str) -> None:
        self.lost = True
        logger.warning('[lock:%s] heartbeat stopped, %s', self._handle.process_type, reason)
        if self._on_lost is not None:
            self._on_lost()

    def start(self) -> 'LockHeartbeat':
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self._interval + 1)

    def __enter__(self) -> 'LockHeartbeat':
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


_service: DistributedLockService | None = None
_service_lock = threading.Lock()


def build_lock_service() -> DistributedLockService:
    backend = (settings.lock_backend or 'redis').strip().lower()
    if backend == 'memory':
        store = InMemoryLockStore()
    elif backend == 'redis':
        store = RedisLockStore.from_url(settings.redis_url, socket_timeout=settings.redis_socket_timeout_seconds)
    else:
        raise RuntimeError(f'LOCK_BACKEND no soportado: {settings.lock_backend}')
    logger.info('lock service using %s backend', backend)
    return DistributedLockService(store, default_expiry_seconds=DEFAULT_EXPIRY_SECONDS)


def get_lock_service() -> DistributedLockService:
    global _service
    with _service_lock:
        if _service is None:
            _service = build_lock_service()
        return _service
