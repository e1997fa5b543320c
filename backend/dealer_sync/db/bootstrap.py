from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

from dealer_sync.db.base import Base
from dealer_sync.db.session import engine as default_engine
from dealer_sync.models import SyncControl  # noqa: F401  registra las tablas en Base.metadata

logger = logging.getLogger(__name__)


def bootstrap_database(bind: Engine | None = None) -> None:
    """
    Ensure the sync tables exist and run a read check on the control table.
    Production schemas are managed by alembic; this is for dev and tests.
    """
    target = bind or default_engine
    Base.metadata.create_all(bind=target)
    try:
        with target.connect() as conn:
            conn.execute(text('SELECT COUNT(1) FROM co_eventoscargasinccontrol'))
        logger.info('DB bootstrap completed (schema ensured + control table read)')
    except Exception:
        logger.exception('DB bootstrap failed')
        raise
