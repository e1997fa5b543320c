from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    app_name: str = 'dealer-sync-api'
    app_env: str = Field(default='dev', alias='APP_ENV')
    app_port: int = Field(default=8000, alias='APP_PORT')
    app_timezone: str = Field(default='America/Mexico_City', alias='APP_TIMEZONE')

    database_url: str = Field(default='sqlite:///./data/dealer_sync.db', alias='DATABASE_URL')
    db_pool_size: int = Field(default=10, alias='DB_POOL_SIZE')
    db_max_overflow: int = Field(default=20, alias='DB_MAX_OVERFLOW')
    db_pool_timeout: int = Field(default=30, alias='DB_POOL_TIMEOUT')
    db_pool_recycle: int = Field(default=1800, alias='DB_POOL_RECYCLE')
    db_bootstrap_on_start: bool = Field(default=False, alias='DB_BOOTSTRAP_ON_START')

    jwt_secret_key: str = Field(default='change_me_jwt_secret', alias='JWT_SECRET_KEY')
    jwt_algorithm: str = Field(default='HS256', alias='JWT_ALGORITHM')
    jwt_expire_minutes: int = Field(default=120, alias='JWT_EXPIRE_MINUTES')

    cors_origins: str = Field(default='*', alias='CORS_ORIGINS')
    log_level: str = Field(default='INFO', alias='LOG_LEVEL')
    log_json: bool = Field(default=True, alias='LOG_JSON')

    lock_backend: str = Field(default='redis', alias='LOCK_BACKEND')
    redis_url: str = Field(default='redis://localhost:6379/0', alias='REDIS_URL')
    redis_socket_timeout_seconds: float = Field(default=5.0, alias='REDIS_SOCKET_TIMEOUT_SECONDS')
    lock_initial_expiry_seconds: int = Field(default=600, alias='LOCK_INITIAL_EXPIRY_SECONDS')
    lock_renewal_interval_seconds: int = Field(default=30, alias='LOCK_RENEWAL_INTERVAL_SECONDS')
    lock_renewal_expiry_seconds: int = Field(default=600, alias='LOCK_RENEWAL_EXPIRY_SECONDS')

    webhook_timeout_seconds: float = Field(default=10.0, alias='WEBHOOK_TIMEOUT_SECONDS')
    webhook_max_retries: int = Field(default=3, alias='WEBHOOK_MAX_RETRIES')
    webhook_backoff_max_seconds: float = Field(default=60.0, alias='WEBHOOK_BACKOFF_MAX_SECONDS')
    webhook_verify_ack: bool = Field(default=False, alias='WEBHOOK_VERIFY_ACK')
    dispatch_max_workers: int = Field(default=5, alias='DISPATCH_MAX_WORKERS')

    implemented_process_types: str = Field(default='ProductList', alias='IMPLEMENTED_PROCESS_TYPES')
    stale_running_minutes: int = Field(default=30, alias='STALE_RUNNING_MINUTES')
    scheduler_enabled: bool = Field(default=True, alias='SCHEDULER_ENABLED')
    scheduler_poll_seconds: float = Field(default=15.0, alias='SCHEDULER_POLL_SECONDS')
    scheduler_max_concurrent_runs: int = Field(default=4, alias='SCHEDULER_MAX_CONCURRENT_RUNS')

    @property
    def process_types(self) -> list[str]:
        return [p.strip() for p in (self.implemented_process_types or '').split(',') if p.strip()]


settings = Settings()
