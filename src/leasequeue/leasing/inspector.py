from datetime import datetime
from typing import Callable
from ..models.job import LockStatus, utcnow
from ..storage.database import Storage


class LockStatusInspector:
    """Read-only view of who holds a job's lease"""

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def get_lock_status(self, job_id: str) -> LockStatus:
        job = self.storage.get_job(job_id)
        if job is None:
            return LockStatus(locked=False)

        # An expired lease the sweeper has not reached yet no longer counts as locked.
        return LockStatus(
            locked=job.lease_active(self.clock()),
            owner_id=job.claimed_by,
            expires_at=job.lock_expires_at,
            status=job.status,
            claimed_at=job.claimed_at,
            last_heartbeat_at=job.last_heartbeat_at,
            lock_version=job.lock_version,
        )
