import functools
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dealer_sync.core.errors import DataAccessError

logger = logging.getLogger(__name__)


def data_access(operation: str):
    """Traduce errores de SQLAlchemy a DataAccessError y deja la sesion usable."""

    def _decorator(fn):
        @functools.wraps(fn)
        def _wrapper(db: Session, *args, **kwargs):
            try:
                return fn(db, *args, **kwargs)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error('[repository] %s failed: %s', operation, exc)
                raise DataAccessError(f'Error de acceso a datos en {operation}', details=str(exc)) from exc

        return _wrapper

    return _decorator


def paginate(query, page: int, page_size: int):
    page = max(1, int(page or 1))
    page_size = max(1, min(500, int(page_size or 50)))
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * page_size).limit(page_size).all()
    return rows, total
