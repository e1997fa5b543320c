from pydantic import BaseModel, Field, field_validator


class BatchSyncIn(BaseModel):
    process_type: str = Field(min_length=1, max_length=64)
    id_carga: str = Field(min_length=1, max_length=64)

    @field_validator('process_type', 'id_carga')
    @classmethod
    def strip_required(cls, value: str) -> str:
        text = str(value or '').strip()
        if not text:
            raise ValueError('valor requerido')
        return text


class BatchSyncOut(BaseModel):
    process_id: str
    lock_acquired: bool
    message: str
    process_type: str
    id_carga: str
    sync_control_id: int | None = None
    status: str | None = None
    job_id: str | None = None


class SyncControlOut(BaseModel):
    id: int
    process_type: str
    id_carga: str
    fecha_carga: str | None = None
    evento_carga_proceso_id: int | None = None
    process_id: str | None = None
    job_id: str | None = None
    status: str
    fecha_inicio: str | None = None
    fecha_fin: str | None = None
    webhooks_totales: int = 0
    webhooks_procesados: int = 0
    webhooks_fallidos: int = 0
    webhooks_omitidos: int = 0
    error_message: str | None = None
    fecha_registro: str | None = None
    usuario_registro: str | None = None
    fecha_modificacion: str | None = None


class SyncControlListOut(BaseModel):
    items: list[SyncControlOut] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50


class ConfirmationIn(BaseModel):
    evento_carga_proceso_id: int = Field(gt=0)
    dealer_bac: str = Field(min_length=1, max_length=32)
    nombre_dealer: str | None = Field(default=None, max_length=255)
    dms_origen: str | None = Field(default=None, max_length=64)

    @field_validator('dealer_bac')
    @classmethod
    def validate_dealer_bac(cls, value: str) -> str:
        text = str(value or '').strip()
        if not text:
            raise ValueError('dealer_bac requerido')
        return text


class ConfirmationOut(BaseModel):
    id: int
    evento_carga_proceso_id: int
    proceso: str
    dms_origen: str | None = None
    dealer_bac: str
    nombre_dealer: str | None = None
    fecha_sincronizacion: str | None = None
    registros_sincronizados: int = 0
    token_confirmacion: str
    fecha_registro: str | None = None
    usuario_registro: str | None = None


class ConfirmationListOut(BaseModel):
    items: list[ConfirmationOut] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50


class ProcessTypesOut(BaseModel):
    process_types: list[str] = Field(default_factory=list)
