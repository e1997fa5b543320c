from datetime import datetime
from zoneinfo import ZoneInfo

from dealer_sync.core.config import settings


def local_now() -> datetime:
    """Hora local de negocio (sin tzinfo) para fechas persistidas y tokens."""
    return datetime.now(ZoneInfo(settings.app_timezone)).replace(tzinfo=None, microsecond=0)
