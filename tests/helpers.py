import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / 'backend') not in sys.path:
    sys.path.insert(0, str(ROOT / 'backend'))

os.environ.setdefault('DATABASE_URL', 'sqlite:///./data/test_dealer_sync.db')
os.environ.setdefault('JWT_SECRET_KEY', 'test_secret_key')
os.environ.setdefault('LOCK_BACKEND', 'memory')
os.environ.setdefault('APP_ENV', 'test')

from dealer_sync.db.base import Base  # noqa: E402
from dealer_sync.db.session import build_engine, build_session_factory  # noqa: E402
from dealer_sync.models.sync import (  # noqa: E402
    WEBHOOK_PENDING,
    EventoCargaProceso,
    EventoCargaSnapshotDealer,
)
from dealer_sync.services.webhook_client import WebhookResult  # noqa: E402


class TempDatabase:
    """SQLite en archivo temporal con el esquema completo."""

    def __init__(self):
        self._dir = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite:///{Path(self._dir.name) / 'dealer_sync_test.db'}")
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = build_session_factory(self.engine)

    def close(self):
        self.engine.dispose()
        self._dir.cleanup()


def seed_evento(session_factory, dealers=(), proceso='ProductList', id_carga='CARGA1', registros=150, estatus=None):
    db = session_factory()
    try:
        evento = EventoCargaProceso(
            proceso=proceso,
            id_carga=id_carga,
            registros=registros,
            estatus=estatus,
            actual=True,
            dealers_totales=len(dealers),
        )
        db.add(evento)
        db.flush()
        for dealer in dealers:
            db.add(
                EventoCargaSnapshotDealer(
                    evento_carga_proceso_id=evento.id,
                    dealer_bac=dealer['dealer_bac'],
                    nombre_dealer=dealer.get('nombre_dealer', f"Dealer {dealer['dealer_bac']}"),
                    dms=dealer.get('dms', 'DMS1'),
                    url_webhook=dealer.get('url_webhook', f"https://{dealer['dealer_bac'].lower()}.example.com/hook"),
                    secret_key=dealer.get('secret_key', 'secret'),
                    estado_webhook=dealer.get('estado_webhook', WEBHOOK_PENDING),
                )
            )
        db.commit()
        return evento.id
    finally:
        db.close()


def ok_result(ack='ack-token', attempts=1):
    return WebhookResult(is_success=True, status_code=200, ack_token=ack, attempts=attempts)


def timeout_result(attempts=3):
    return WebhookResult(is_success=False, error_message='Timeout tras 10.0s', attempts=attempts, is_timeout=True)


class FakeWebhookClient:
    """Responde por url; registra cada envio."""

    def __init__(self, results_by_url, default=None):
        self.results_by_url = dict(results_by_url)
        self.default = default or ok_result()
        self.calls = []

    def send(self, url, payload, secret_key):
        self.calls.append((url, payload, secret_key))
        result = self.results_by_url.get(url, self.default)
        if isinstance(result, Exception):
            raise result
        return WebhookResult(**vars(result))

    def close(self):
        pass
