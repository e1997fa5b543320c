from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from dealer_sync.core.hashing import format_timestamp
from dealer_sync.models.sync import WEBHOOK_EXITOSO


@dataclass(frozen=True)
class EventoInfo:
    id: int
    proceso: str
    id_carga: str
    fecha_carga: datetime | None
    registros: int


@dataclass(frozen=True)
class DealerTarget:
    id: int
    dealer_bac: str
    nombre_dealer: str | None
    dms: str | None
    url_webhook: str
    secret_key: str | None
    estado_webhook: str

    @property
    def confirmed(self) -> bool:
        return self.estado_webhook == WEBHOOK_EXITOSO


@dataclass
class WebhookGroup:
    """Dealers de una misma carga que comparten url de webhook; reciben un solo POST."""

    url_webhook: str
    dealers: list[DealerTarget] = field(default_factory=list)

    @property
    def pending_dealers(self) -> list[DealerTarget]:
        return [d for d in self.dealers if not d.confirmed]

    @property
    def eligible(self) -> bool:
        return bool(self.pending_dealers)

    @property
    def secret_key(self) -> str | None:
        for dealer in self.dealers:
            if dealer.secret_key:
                return dealer.secret_key
        return None


def group_by_webhook(dealers: list[DealerTarget]) -> list[WebhookGroup]:
    groups: dict[str, WebhookGroup] = {}
    for dealer in dealers:
        url = dealer.url_webhook.strip()
        groups.setdefault(url, WebhookGroup(url_webhook=url)).dealers.append(dealer)
    return list(groups.values())


def _iso(value: datetime | None) -> str | None:
    return format_timestamp(value) if value is not None else None


def build_webhook_payload(
    evento: EventoInfo,
    dealers: list[DealerTarget],
    fecha_sincronizacion: datetime,
    webhooks_totales: int,
) -> dict:
    return {
        'processType': evento.proceso,
        'idCarga': evento.id_carga,
        'fechaCarga': _iso(evento.fecha_carga),
        'fechaSincronizacion': format_timestamp(fecha_sincronizacion),
        'registros': evento.registros,
        'procesodetalle': [
            {
                'eventoCargaProcesoId': evento.id,
                'proceso': evento.proceso,
                'fechaCarga': _iso(evento.fecha_carga),
                'idCarga': evento.id_carga,
                'registros': evento.registros,
                'webhooksTotales': webhooks_totales,
            }
        ],
        'dealers': [
            {
                'dealerBac': d.dealer_bac,
                'nombreDealer': d.nombre_dealer or '',
                'dms': d.dms or '',
            }
            for d in dealers
        ],
    }
