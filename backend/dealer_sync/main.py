import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dealer_sync.api.v1.router import router as v1_router
from dealer_sync.core.config import settings
from dealer_sync.core.logging_config import configure_logging, log_request, structured_log
from dealer_sync.core.prod_check import validate_production_config
from dealer_sync.db.bootstrap import bootstrap_database
from dealer_sync.services.scheduler import BatchSyncScheduler

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version='1.0.0')

if settings.cors_origins and settings.cors_origins.strip() != '*':
    origins = [o.strip() for o in settings.cors_origins.split(',') if o.strip()]
else:
    origins = [
        'http://localhost:8080', 'http://localhost:5173',
        'http://127.0.0.1:8080', 'http://127.0.0.1:5173',
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


def _trace_id(request: Request) -> str:
    return getattr(request.state, 'trace_id', None) or request.headers.get('x-trace-id') or str(uuid.uuid4())


@app.middleware('http')
async def trace_and_logging(request: Request, call_next):
    trace_id = request.headers.get('x-trace-id') or str(uuid.uuid4())
    request.state.trace_id = trace_id
    start = time.time()
    try:
        response = await call_next(request)
        latency = round((time.time() - start) * 1000, 2)
        log_request(request.url.path, request.method, trace_id, latency, response.status_code)
        response.headers['x-trace-id'] = trace_id
        response.headers['x-latency-ms'] = str(latency)
        return response
    except Exception as exc:
        latency = round((time.time() - start) * 1000, 2)
        structured_log(
            'error', 'request_failed',
            trace_id=trace_id, duration_ms=latency,
            endpoint=f'{request.method} {request.url.path}',
            error=str(exc),
        )
        body = {'error_code': 'INTERNAL_ERROR', 'message': 'Error interno', 'details': str(exc), 'trace_id': trace_id}
        return JSONResponse(status_code=500, content=body, headers={'x-trace-id': trace_id, 'x-latency-ms': str(latency)})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    trace_id = _trace_id(request)
    if isinstance(exc.detail, dict):
        body = {
            'error_code': str(exc.detail.get('error_code') or 'HTTP_ERROR'),
            'message': str(exc.detail.get('message') or 'HTTP Error'),
            'details': exc.detail.get('details'),
            'trace_id': trace_id,
        }
    else:
        body = {'error_code': 'HTTP_ERROR', 'message': str(exc.detail), 'details': None, 'trace_id': trace_id}
    return JSONResponse(status_code=exc.status_code, content=body)


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {'loc': list(err.get('loc') or []), 'msg': str(err.get('msg') or ''), 'type': str(err.get('type') or '')}
        for err in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    body = {
        'error_code': 'INVALID_PAYLOAD',
        'message': 'Payload invalido',
        'details': {'errors': jsonable_errors(exc)},
        'trace_id': _trace_id(request),
    }
    return JSONResponse(status_code=422, content=body)


app.include_router(v1_router)


@app.on_event('startup')
def _startup() -> None:
    validate_production_config()
    if settings.db_bootstrap_on_start or settings.app_env != 'prod':
        bootstrap_database()
    app.state.scheduler = BatchSyncScheduler().start(poll=settings.scheduler_enabled)
    logger.info('dealer sync api started (env=%s, lock=%s)', settings.app_env, settings.lock_backend)


@app.on_event('shutdown')
def _shutdown() -> None:
    scheduler = getattr(app.state, 'scheduler', None)
    if scheduler is not None:
        scheduler.stop()
        app.state.scheduler = None
