from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker

from dealer_sync.core.config import settings


def _ensure_sqlite_dir(database_url: str) -> None:
    database = make_url(database_url).database
    if database and database != ':memory:':
        Path(database).resolve().parent.mkdir(parents=True, exist_ok=True)


def build_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith('sqlite')
    connect_args = {'check_same_thread': False, 'timeout': 30} if is_sqlite else {}
    engine_kwargs = {
        'pool_pre_ping': True,
        'connect_args': connect_args,
    }
    if is_sqlite:
        _ensure_sqlite_dir(database_url)
    else:
        engine_kwargs.update(
            {
                'pool_size': max(1, int(settings.db_pool_size or 10)),
                'max_overflow': max(0, int(settings.db_max_overflow or 20)),
                'pool_timeout': max(1, int(settings.db_pool_timeout or 30)),
                'pool_recycle': max(30, int(settings.db_pool_recycle or 1800)),
            }
        )

    new_engine = create_engine(database_url, **engine_kwargs)

    if is_sqlite:
        # Los workers del dispatcher escriben en paralelo desde varios hilos
        @event.listens_for(new_engine, 'connect')
        def _sqlite_pragmas(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA journal_mode=WAL;')
            cursor.execute('PRAGMA busy_timeout=30000;')
            cursor.close()

    return new_engine


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)
