from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from ..models.job import ClaimResult, HeartbeatResult, JobStatus, LockStatus, RecoveryResult, utcnow
from ..storage.database import Storage
from .claim import ClaimCoordinator
from .heartbeat import HeartbeatManager
from .inspector import LockStatusInspector
from .lifecycle import LifecycleTransitioner
from .recovery import LeaseRecoveryScanner


class JobLeaseService:
    """Entry point for workers and the recovery scheduler.

    Workers call claim -> mark_running -> heartbeat (repeatedly) -> release.
    A separate scheduler calls recover_expired_leases on a fixed interval.
    Every state change is one conditional write against the shared store, so
    any number of processes can share a database through their own instance.
    """

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock
        self.coordinator = ClaimCoordinator(storage, clock)
        self.heartbeats = HeartbeatManager(storage, clock)
        self.lifecycle = LifecycleTransitioner(storage, clock)
        self.scanner = LeaseRecoveryScanner(storage, clock)
        self.inspector = LockStatusInspector(storage, clock)

    def claim(self, worker_id: str, tenant_scope: Optional[str] = None,
              lease_duration: timedelta = timedelta(minutes=5),
              claim_retry_budget: int = 3) -> ClaimResult:
        return self.coordinator.claim(worker_id, tenant_scope, lease_duration, claim_retry_budget)

    def heartbeat(self, job_id: str, worker_id: str, extension: timedelta = timedelta(minutes=5),
                  lock_version: Optional[int] = None) -> HeartbeatResult:
        return self.heartbeats.heartbeat(job_id, worker_id, extension, lock_version)

    def mark_running(self, job_id: str, worker_id: str, lock_version: Optional[int] = None) -> bool:
        return self.lifecycle.mark_running(job_id, worker_id, lock_version)

    def release(self, job_id: str, worker_id: str, final_status: JobStatus,
                result: Any = None, error_message: Optional[str] = None,
                lock_version: Optional[int] = None) -> bool:
        return self.lifecycle.release(job_id, worker_id, final_status, result, error_message, lock_version)

    def recover_expired_leases(self) -> RecoveryResult:
        return self.scanner.recover_expired_leases()

    def get_lock_status(self, job_id: str) -> LockStatus:
        return self.inspector.get_lock_status(job_id)
