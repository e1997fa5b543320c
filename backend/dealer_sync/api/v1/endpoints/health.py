from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from dealer_sync.core.config import settings
from dealer_sync.db.session import SessionLocal

router = APIRouter()


def _check_lock_store_ok(request: Request) -> bool | None:
    """
    Verifica el almacen de locks del planificador.
    Retorna True si OK, False si falla, None si el planificador no esta iniciado.
    """
    scheduler = getattr(request.app.state, 'scheduler', None)
    if scheduler is None:
        return None
    return scheduler.lock_service.ping()


@router.get('/health')
def health(request: Request):
    """
    Health check. Returns 200 with db_ok true when DB is reachable.
    Returns 503 when DB is unreachable (dependencies down).
    Incluye lock_store_ok; con el lock caido los batch no arrancan pero la API sigue respondiendo.
    """
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text('SELECT 1'))
        db_ok = True
    except Exception:
        db_ok = False
    finally:
        db.close()
    if not db_ok:
        return JSONResponse(
            status_code=503,
            content={
                'ok': False,
                'service': settings.app_name,
                'db_ok': False,
                'lock_store_ok': None,
                'message': 'Database unreachable',
            },
        )
    return {
        'ok': True,
        'service': settings.app_name,
        'db_ok': True,
        'lock_store_ok': _check_lock_store_ok(request),
        'lock_backend': settings.lock_backend,
    }
