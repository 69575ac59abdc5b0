import logging
from datetime import datetime
from typing import Any, Callable, Optional
from ..models.job import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus, utcnow
from ..storage.database import JobModel, Storage
from .heartbeat import ownership_conditions

logger = logging.getLogger(__name__)


class LifecycleTransitioner:
    """Owner-only transitions: claimed -> running, and claimed/running -> terminal.

    A worker that no longer owns the job gets False back and nothing is written.
    """

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def mark_running(self, job_id: str, worker_id: str, lock_version: Optional[int] = None) -> bool:
        updated = self.storage.conditional_update(
            job_id,
            [JobModel.status == JobStatus.CLAIMED, *ownership_conditions(worker_id, lock_version)],
            {"status": JobStatus.RUNNING, "started_at": self.clock()},
        )
        if updated is None:
            logger.warning(f"Worker {worker_id} could not mark job {job_id} running - not the lease holder")
            return False
        return True

    def release(self, job_id: str, worker_id: str, final_status: JobStatus,
                result: Any = None, error_message: Optional[str] = None,
                lock_version: Optional[int] = None) -> bool:
        final_status = JobStatus(final_status)
        if final_status not in TERMINAL_STATUSES:
            raise ValueError(f"final_status must be completed or failed, got {final_status.value}")

        updates = {
            "status": final_status,
            "completed_at": self.clock(),
            "lock_expires_at": None,
        }
        if result is not None:
            updates["result"] = result
        if error_message is not None:
            updates["error_message"] = error_message

        updated = self.storage.conditional_update(
            job_id,
            [JobModel.status.in_(ACTIVE_STATUSES), *ownership_conditions(worker_id, lock_version)],
            updates,
        )
        if updated is None:
            logger.warning(f"Release of job {job_id} by worker {worker_id} rejected - lease lost")
            return False

        logger.info(f"Job {job_id} released by worker {worker_id} as {final_status.value}")
        return True
