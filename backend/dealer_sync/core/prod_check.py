"""
Validaciones de seguridad en arranque para APP_ENV=prod.
Si alguna falla, se lanza RuntimeError y la aplicación no inicia.
"""
from dealer_sync.core.config import settings

# Valores considerados "por defecto" inseguros en producción
INSECURE_DEFAULTS = {
    "JWT_SECRET_KEY": "change_me_jwt_secret",
}


def validate_production_config() -> None:
    """Comprueba que en producción no se usen CORS *, secretos JWT por defecto ni lock en memoria."""
    if (getattr(settings, "app_env", "dev") or "dev").strip().lower() != "prod":
        return

    errors: list[str] = []

    if not (settings.cors_origins or "").strip():
        errors.append("CORS_ORIGINS no puede estar vacío en producción.")
    elif settings.cors_origins.strip() == "*":
        errors.append(
            "CORS_ORIGINS no puede ser '*' en producción. "
            "Configure una lista explícita de orígenes (ej: https://app.ejemplo.com)."
        )

    if (settings.jwt_secret_key or "").strip() in (
        "",
        INSECURE_DEFAULTS["JWT_SECRET_KEY"],
    ):
        errors.append(
            "JWT_SECRET_KEY debe estar definido y no usar el valor por defecto en producción."
        )

    # El lock en memoria no excluye procesos en distintos nodos
    if (settings.lock_backend or "").strip().lower() != "redis":
        errors.append("LOCK_BACKEND debe ser 'redis' en producción.")
    elif not (settings.redis_url or "").strip():
        errors.append("REDIS_URL debe estar definido en producción.")

    if not settings.process_types:
        errors.append("IMPLEMENTED_PROCESS_TYPES no puede estar vacío.")

    if errors:
        raise RuntimeError(
            "Configuración de producción inválida:\n  - " + "\n  - ".join(errors)
        )
