"""
Logging del servicio de sincronizacion.

- ``configure_logging`` prepara el logger raiz para la API y el worker.
- Los eventos de request y de ciclo de vida de un batch se emiten como una
  linea JSON por evento (trace_id / process_id, level, message, duration_ms).
"""
from __future__ import annotations

import json
import logging
from typing import Any

from dealer_sync.core.clock import local_now
from dealer_sync.core.config import settings

EVENT_LOGGER = "dealer_sync.events"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return
    logging.basicConfig(
        level=(level or settings.log_level or "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    # urllib3 registra cada reintento de conexion a nivel DEBUG/WARNING
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _configured = True


def _event_fields(trace_id: str | None, duration_ms: float | None, endpoint: str | None, fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    if trace_id is not None:
        out["trace_id"] = trace_id
    if duration_ms is not None:
        out["duration_ms"] = round(duration_ms, 2)
    if endpoint is not None:
        out["endpoint"] = endpoint
    return out


def structured_log(
    level: str,
    message: str,
    *,
    trace_id: str | None = None,
    duration_ms: float | None = None,
    endpoint: str | None = None,
    **fields: Any,
) -> None:
    payload = {
        "ts": local_now().isoformat(),
        "service": settings.app_name,
        "level": level,
        "message": message,
        **_event_fields(trace_id, duration_ms, endpoint, fields),
    }
    log_level = getattr(logging, level.upper(), logging.INFO)
    if settings.log_json:
        logging.getLogger(EVENT_LOGGER).log(log_level, json.dumps(payload, ensure_ascii=False, default=str))
    else:
        extras = " ".join(f"{k}={v}" for k, v in payload.items() if k not in ("ts", "service", "level", "message"))
        logging.getLogger(EVENT_LOGGER).log(log_level, "%s %s", message, extras)


def log_request(request_path: str, method: str, trace_id: str, duration_ms: float, status_code: int) -> None:
    structured_log(
        "warning" if status_code >= 500 else "info",
        "request",
        trace_id=trace_id,
        duration_ms=duration_ms,
        endpoint=f"{method} {request_path}",
        status_code=status_code,
    )


def log_batch_event(event: str, process_id: str | None, **fields: Any) -> None:
    """Evento de ciclo de vida de un batch (started, completed, failed, lock_busy...)."""
    level = "error" if event.endswith("failed") else "info"
    structured_log(level, f"batch_sync.{event}", process_id=process_id, **fields)
