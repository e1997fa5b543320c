import logging
import os
import signal
import time

from dealer_sync.core.config import settings
from dealer_sync.core.logging_config import configure_logging
from dealer_sync.services.scheduler import BatchSyncScheduler


logger = logging.getLogger(__name__)


def main() -> None:
    configure_logging()
    worker_name = os.getenv('SYNC_WORKER_NAME', 'batch-sync-worker')
    idle_sleep = float(os.getenv('SYNC_WORKER_IDLE_SLEEP_SECONDS', str(settings.scheduler_poll_seconds)))
    scheduler = BatchSyncScheduler()

    def _shutdown_handler(signum, _frame):  # type: ignore[no-untyped-def]
        logger.info('batch sync worker received signal %s, stopping...', signum)
        scheduler.stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)

    logger.info('batch sync worker started: %s', worker_name)
    while not scheduler.stop_event.is_set():
        launched = scheduler.tick()
        if not launched:
            scheduler.stop_event.wait(max(0.5, idle_sleep))
        else:
            time.sleep(0.1)

    scheduler.stop()
    logger.info('batch sync worker stopped: %s', worker_name)


if __name__ == '__main__':
    main()
