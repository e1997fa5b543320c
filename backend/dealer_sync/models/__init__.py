from dealer_sync.models.sync import (
    EventoCargaProceso,
    EventoCargaSnapshotDealer,
    SincCargaProcesoDealer,
    SyncControl,
)

__all__ = [
    'EventoCargaProceso',
    'EventoCargaSnapshotDealer',
    'SincCargaProcesoDealer',
    'SyncControl',
]
