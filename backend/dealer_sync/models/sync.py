from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from dealer_sync.core.clock import local_now
from dealer_sync.db.base import Base

STATUS_PENDING = 'PENDING'
STATUS_RUNNING = 'RUNNING'
STATUS_COMPLETED = 'COMPLETED'
STATUS_FAILED = 'FAILED'
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_RUNNING)

WEBHOOK_PENDING = 'PENDING'
WEBHOOK_EXITOSO = 'EXITOSO'
WEBHOOK_FALLIDO = 'FALLIDO'

EVENTO_SINCRONIZADA = 'SINCRONIZADA'


class EventoCargaProceso(Base):
    __tablename__ = 'co_eventoscargaproceso'

    id = Column(Integer, primary_key=True, index=True)
    proceso = Column(String(64), nullable=False, index=True)
    id_carga = Column(String(64), nullable=False, index=True)
    fecha_carga = Column(DateTime, nullable=False, default=local_now)
    registros = Column(Integer, nullable=False, default=0)
    estatus = Column(String(32), nullable=True)
    actual = Column(Boolean, nullable=False, default=True, index=True)
    dealers_totales = Column(Integer, nullable=False, default=0)
    dealers_sincronizados = Column(Integer, nullable=False, default=0)
    porc_dealers_sinc = Column(Float, nullable=False, default=0.0)
    fecha_registro = Column(DateTime, nullable=False, default=local_now)
    usuario_registro = Column(String(128), nullable=False, default='system')
    fecha_modificacion = Column(DateTime, nullable=True)
    usuario_modificacion = Column(String(128), nullable=True)

    __table_args__ = (
        Index('ix_co_eventoscargaproceso_proceso_carga', 'proceso', 'id_carga'),
    )


class EventoCargaSnapshotDealer(Base):
    __tablename__ = 'co_eventoscargasnapshotdealers'

    id = Column(Integer, primary_key=True, index=True)
    evento_carga_proceso_id = Column(Integer, ForeignKey('co_eventoscargaproceso.id'), nullable=False, index=True)
    dealer_bac = Column(String(32), nullable=False, index=True)
    nombre_dealer = Column(String(255), nullable=True)
    dms = Column(String(64), nullable=True)
    url_webhook = Column(String(512), nullable=True)
    secret_key = Column(String(255), nullable=True)
    estado_webhook = Column(String(16), nullable=False, default=WEBHOOK_PENDING, index=True)
    intentos_webhook = Column(Integer, nullable=False, default=0)
    ultimo_intento_webhook = Column(DateTime, nullable=True)
    ultimo_error_webhook = Column(Text, nullable=True)
    token_confirmacion = Column(String(64), nullable=True)
    fecha_sincronizacion = Column(DateTime, nullable=True)
    fecha_registro = Column(DateTime, nullable=False, default=local_now)
    fecha_modificacion = Column(DateTime, nullable=True)
    usuario_modificacion = Column(String(128), nullable=True)

    __table_args__ = (
        Index('ix_co_snapshotdealers_evento_url', 'evento_carga_proceso_id', 'url_webhook'),
    )


class SincCargaProcesoDealer(Base):
    __tablename__ = 'co_sincronizacioncargaprocesodealer'

    id = Column(Integer, primary_key=True, index=True)
    evento_carga_proceso_id = Column(Integer, ForeignKey('co_eventoscargaproceso.id'), nullable=False, index=True)
    proceso = Column(String(64), nullable=False)
    dms_origen = Column(String(64), nullable=False, default='')
    dealer_bac = Column(String(32), nullable=False, index=True)
    nombre_dealer = Column(String(255), nullable=False, default='')
    fecha_sincronizacion = Column(DateTime, nullable=False)
    registros_sincronizados = Column(Integer, nullable=False, default=0)
    token_confirmacion = Column(String(64), nullable=False)
    fecha_registro = Column(DateTime, nullable=False, default=local_now)
    usuario_registro = Column(String(128), nullable=False, default='system')

    __table_args__ = (
        UniqueConstraint('evento_carga_proceso_id', 'dealer_bac', name='uq_co_sinccargaprocesodealer_evento_dealer'),
    )


class SyncControl(Base):
    __tablename__ = 'co_eventoscargasinccontrol'

    id = Column(Integer, primary_key=True, index=True)
    process_type = Column(String(64), nullable=False, index=True)
    id_carga = Column(String(64), nullable=False, index=True)
    fecha_carga = Column(DateTime, nullable=True)
    evento_carga_proceso_id = Column(Integer, ForeignKey('co_eventoscargaproceso.id'), nullable=True, index=True)
    process_id = Column(String(32), nullable=True, index=True)
    job_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    # processType|idCarga mientras la fila esta PENDING o RUNNING; NULL al cerrar
    active_key = Column(String(160), nullable=True)
    fecha_inicio = Column(DateTime, nullable=True)
    fecha_fin = Column(DateTime, nullable=True)
    webhooks_totales = Column(Integer, nullable=False, default=0)
    webhooks_procesados = Column(Integer, nullable=False, default=0)
    webhooks_fallidos = Column(Integer, nullable=False, default=0)
    webhooks_omitidos = Column(Integer, nullable=False, default=0)
    error_message = Column(String(1000), nullable=True)
    error_details = Column(Text, nullable=True)
    fecha_registro = Column(DateTime, nullable=False, default=local_now)
    usuario_registro = Column(String(128), nullable=False, default='system')
    fecha_modificacion = Column(DateTime, nullable=True)
    usuario_modificacion = Column(String(128), nullable=True)

    __table_args__ = (
        Index('ix_co_sinccontrol_process_carga_status', 'process_type', 'id_carga', 'status'),
        UniqueConstraint('active_key', name='uq_co_eventoscargasinccontrol_active_key'),
    )
