import logging
from datetime import datetime
from typing import Callable, Optional
from ..errors import StoreError
from ..models.job import ACTIVE_STATUSES, JobRecord, JobStatus, RecoveryResult, utcnow
from ..storage.database import JobModel, Storage

logger = logging.getLogger(__name__)

EXHAUSTED_MESSAGE = "Max delivery attempts exceeded - job lease expired"


class LeaseRecoveryScanner:
    """Sweeps jobs whose lease ran out and either re-queues or fails them"""

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def _recover_one(self, job: JobRecord, now: datetime) -> Optional[JobStatus]:
        attempts = job.delivery_attempts + 1
        exhausted = attempts >= job.max_delivery_attempts
        values = {
            "delivery_attempts": attempts,
            "claimed_by": None,
            "claimed_at": None,
            "lock_expires_at": None,
        }
        if exhausted:
            values.update(status=JobStatus.FAILED, completed_at=now, error_message=EXHAUSTED_MESSAGE)
        else:
            values["status"] = JobStatus.QUEUED

        # Same lease, still expired: a takeover or heartbeat since the scan wins.
        updated = self.storage.conditional_update(
            job.id,
            [
                JobModel.status.in_(ACTIVE_STATUSES),
                JobModel.lock_version == job.lock_version,
                JobModel.lock_expires_at < now,
            ],
            values,
        )
        if updated is None:
            return None

        if exhausted:
            logger.warning(f"Job {job.id} failed after {attempts} delivery attempts")
        else:
            logger.info(f"Job {job.id} lease recovered (attempt {attempts}/{job.max_delivery_attempts})")
        return updated.status

    def recover_expired_leases(self) -> RecoveryResult:
        now = self.clock()
        expired = self.storage.find_all([
            JobModel.status.in_(ACTIVE_STATUSES),
            JobModel.lock_expires_at < now,
        ])

        outcome = RecoveryResult()
        for job in expired:
            try:
                status = self._recover_one(job, now)
            except StoreError as e:
                logger.error(f"Error recovering expired lease on job {job.id}: {str(e)}")
                outcome.errors.append(job.id)
                continue
            if status is None:
                continue
            outcome.job_ids.append(job.id)
            if status == JobStatus.FAILED:
                outcome.failed.append(job.id)
            else:
                outcome.requeued.append(job.id)

        outcome.recovered_count = len(outcome.job_ids)
        if expired:
            logger.info(f"Recovered {outcome.recovered_count} of {len(expired)} expired leases")
        return outcome
