import threading
import logging
from ..errors import StoreError
from ..leasing.service import JobLeaseService
from ..models.job import RecoveryResult


class RecoveryScheduler:
    """Runs the expired-lease sweep on a fixed interval until stopped"""

    def __init__(self, service: JobLeaseService, interval: float = 30):
        self.service = service
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread = None
        self.logger = logging.getLogger(__name__)

    def sweep(self) -> RecoveryResult:
        try:
            result = self.service.recover_expired_leases()
        except StoreError as e:
            # Candidate scan failed; the next tick retries.
            self.logger.error(f"Lease sweep failed: {str(e)}")
            return RecoveryResult()
        if result.recovered_count:
            self.logger.info(
                f"Sweep recovered {result.recovered_count} job(s): "
                f"{len(result.requeued)} requeued, {len(result.failed)} failed"
            )
        return result

    def run(self):
        while not self._stop_event.is_set():
            self.sweep()
            self._stop_event.wait(self.interval)

    def start(self):
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join()
            self._thread = None
