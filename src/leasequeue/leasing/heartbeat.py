import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from ..models.job import ACTIVE_STATUSES, HeartbeatResult, utcnow
from ..storage.database import JobModel, Storage

logger = logging.getLogger(__name__)


def ownership_conditions(worker_id: str, lock_version: Optional[int] = None) -> list:
    """Predicate a lease holder must satisfy for any write on its job.

    Recovery clears `claimed_by` and a takeover replaces it, so a stale owner
    fails this check. `lock_version`, when given, pins the exact lease.
    """
    conditions = [JobModel.claimed_by == worker_id]
    if lock_version is not None:
        conditions.append(JobModel.lock_version == lock_version)
    return conditions


class HeartbeatManager:

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def heartbeat(self, job_id: str, worker_id: str, extension: timedelta = timedelta(minutes=5),
                  lock_version: Optional[int] = None) -> HeartbeatResult:
        """Push the lease deadline to now + `extension` if `worker_id` still owns the job"""
        now = self.clock()
        new_expiry = now + extension
        updated = self.storage.conditional_update(
            job_id,
            [JobModel.status.in_(ACTIVE_STATUSES), *ownership_conditions(worker_id, lock_version)],
            {"lock_expires_at": new_expiry, "last_heartbeat_at": now},
        )
        if updated is None:
            logger.warning(f"Heartbeat from worker {worker_id} rejected for job {job_id} - ownership lost")
            return HeartbeatResult(success=False, error="Job not found or not owned by this worker")

        logger.debug(f"Lease on job {job_id} extended to {new_expiry.isoformat()}")
        return HeartbeatResult(success=True, lock_expires_at=updated.lock_expires_at)
