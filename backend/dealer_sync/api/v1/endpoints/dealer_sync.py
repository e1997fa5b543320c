from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from dealer_sync.core.config import settings
from dealer_sync.core.deps import actor_from, require_permission
from dealer_sync.core.errors import (
    DataAccessError,
    DuplicateConfirmationError,
    LockBusyError,
    NotFoundError,
    SyncError,
    SyncValidationError,
)
from dealer_sync.schemas.common import ErrorBody
from dealer_sync.schemas.dealer_sync import (
    BatchSyncIn,
    BatchSyncOut,
    ConfirmationIn,
    ConfirmationListOut,
    ConfirmationOut,
    ProcessTypesOut,
    SyncControlListOut,
    SyncControlOut,
)
from dealer_sync.services.batch_sync import BatchSyncOrchestrator
from dealer_sync.services.confirmation_service import ConfirmationService
from dealer_sync.services.sync_control_service import SyncControlService

router = APIRouter()

ERROR_RESPONSES = {
    400: {'model': ErrorBody},
    404: {'model': ErrorBody},
    409: {'model': ErrorBody},
    503: {'model': ErrorBody},
}

_STATUS_BY_ERROR = (
    (SyncValidationError, 400),
    (NotFoundError, 404),
    (DuplicateConfirmationError, 409),
    (LockBusyError, 409),
    (DataAccessError, 503),
)


def _http_error(exc: SyncError) -> HTTPException:
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    return HTTPException(
        status_code=status_code,
        detail={'error_code': exc.error_code, 'message': exc.message, 'details': exc.details},
    )


def get_orchestrator(request: Request) -> BatchSyncOrchestrator:
    scheduler = getattr(request.app.state, 'scheduler', None)
    if scheduler is None:
        raise HTTPException(
            status_code=503,
            detail={'error_code': 'SCHEDULER_UNAVAILABLE', 'message': 'Servicio de sincronizacion no iniciado', 'details': None},
        )
    return scheduler.orchestrator


@router.post('/batch', response_model=BatchSyncOut, status_code=202, responses={**ERROR_RESPONSES, 409: {'model': BatchSyncOut}})
def start_batch_sync(
    payload: BatchSyncIn,
    orchestrator: BatchSyncOrchestrator = Depends(get_orchestrator),
    user=Depends(require_permission('sync:run')),
):
    try:
        result = orchestrator.start_batch_sync(payload.process_type, payload.id_carga, actor_from(user))
    except SyncError as exc:
        raise _http_error(exc)
    if not result.lock_acquired:
        return JSONResponse(status_code=409, content=result.as_dict())
    return result.as_dict()


@router.post('/sync-control/{sync_control_id}/retry', response_model=BatchSyncOut, status_code=202, responses=ERROR_RESPONSES)
def retry_sync_control(
    sync_control_id: int,
    orchestrator: BatchSyncOrchestrator = Depends(get_orchestrator),
    user=Depends(require_permission('sync:run')),
):
    try:
        return orchestrator.retry_pending(sync_control_id, actor_from(user)).as_dict()
    except SyncError as exc:
        raise _http_error(exc)


@router.get('/sync-control/{sync_control_id}', response_model=SyncControlOut, responses=ERROR_RESPONSES)
def get_sync_control(
    sync_control_id: int,
    user=Depends(require_permission('sync:read')),
):
    try:
        return SyncControlService.get(sync_control_id)
    except SyncError as exc:
        raise _http_error(exc)


@router.get('/sync-control', response_model=SyncControlListOut, responses=ERROR_RESPONSES)
def list_sync_controls(
    process_type: str | None = Query(default=None, max_length=64),
    id_carga: str | None = Query(default=None, max_length=64),
    status: str | None = Query(default=None, max_length=16),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    user=Depends(require_permission('sync:read')),
):
    try:
        return SyncControlService.list(
            process_type=process_type,
            id_carga=id_carga,
            status=status,
            page=page,
            page_size=page_size,
        )
    except SyncError as exc:
        raise _http_error(exc)


@router.post('/confirmaciones', response_model=ConfirmationOut, status_code=201, responses=ERROR_RESPONSES)
def create_confirmation(
    payload: ConfirmationIn,
    user=Depends(require_permission('confirmations:write')),
):
    try:
        return ConfirmationService.create(
            payload.evento_carga_proceso_id,
            payload.dealer_bac,
            nombre_dealer=payload.nombre_dealer,
            dms_origen=payload.dms_origen,
            actor=actor_from(user),
        )
    except SyncError as exc:
        raise _http_error(exc)


@router.get('/confirmaciones', response_model=ConfirmationListOut, responses=ERROR_RESPONSES)
def list_confirmations(
    evento_carga_proceso_id: int | None = Query(default=None, gt=0),
    dealer_bac: str | None = Query(default=None, max_length=32),
    proceso: str | None = Query(default=None, max_length=64),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    user=Depends(require_permission('confirmations:read')),
):
    try:
        return ConfirmationService.list(
            evento_carga_proceso_id=evento_carga_proceso_id,
            dealer_bac=dealer_bac,
            proceso=proceso,
            page=page,
            page_size=page_size,
        )
    except SyncError as exc:
        raise _http_error(exc)


@router.get('/process-types', response_model=ProcessTypesOut)
def list_process_types(user=Depends(require_permission('sync:read'))):
    return {'process_types': settings.process_types}
