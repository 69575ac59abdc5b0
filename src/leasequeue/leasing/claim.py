import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy import and_, or_
from ..models.job import ACTIVE_STATUSES, ClaimOutcome, ClaimResult, JobRecord, JobStatus, utcnow
from ..storage.database import JobModel, Storage

logger = logging.getLogger(__name__)


def eligible_condition(now: datetime):
    """Queued jobs, plus claimed/running jobs whose lease ran out before `now`.

    A takeover counts as a lost delivery, so an expired job on its last
    delivery attempt is left for the recovery sweep to fail.
    """
    return or_(
        JobModel.status == JobStatus.QUEUED,
        and_(
            JobModel.status.in_(ACTIVE_STATUSES),
            JobModel.lock_expires_at < now,
            JobModel.delivery_attempts + 1 < JobModel.max_delivery_attempts,
        ),
    )


class ClaimCoordinator:
    """Hands the best eligible job to a worker with an optimistic compare-and-swap"""

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def select_candidate(self, now: datetime, tenant_scope: Optional[str] = None) -> Optional[JobRecord]:
        conditions = [eligible_condition(now)]
        if tenant_scope is not None:
            conditions.append(JobModel.tenant_scope == tenant_scope)
        return self.storage.find_first(
            conditions,
            order_by=(JobModel.priority.asc(), JobModel.created_at.asc()),
        )

    def try_claim(self, candidate: JobRecord, worker_id: str, now: datetime,
                  lease_duration: timedelta) -> Optional[JobRecord]:
        """Swap in a new lease on `candidate` if nobody has claimed it since it was read"""
        values = {
            "status": JobStatus.CLAIMED,
            "claimed_by": worker_id,
            "claimed_at": now,
            "lock_expires_at": now + lease_duration,
            "last_heartbeat_at": now,
            "lock_version": candidate.lock_version + 1,
        }
        if candidate.status != JobStatus.QUEUED:
            values["delivery_attempts"] = candidate.delivery_attempts + 1
        return self.storage.conditional_update(
            candidate.id,
            [
                JobModel.lock_version == candidate.lock_version,
                eligible_condition(now),
            ],
            values,
        )

    def claim(self, worker_id: str, tenant_scope: Optional[str] = None,
              lease_duration: timedelta = timedelta(minutes=5),
              claim_retry_budget: int = 3) -> ClaimResult:
        """Claim the next job for `worker_id`.

        Each lost race re-selects against fresh state; after `claim_retry_budget`
        lost races the call gives up with CONTENTION_EXHAUSTED. An empty queue
        is reported as EMPTY, never raised.
        """
        if claim_retry_budget < 1:
            raise ValueError("claim_retry_budget must be at least 1")

        races_lost = 0
        while races_lost < claim_retry_budget:
            now = self.clock()
            candidate = self.select_candidate(now, tenant_scope)
            if candidate is None:
                return ClaimResult(outcome=ClaimOutcome.EMPTY, races_lost=races_lost)

            claimed = self.try_claim(candidate, worker_id, now, lease_duration)
            if claimed is None:
                races_lost += 1
                logger.warning(
                    f"Failed to claim job {candidate.id} "
                    f"(race {races_lost}/{claim_retry_budget}) - another worker won"
                )
                continue

            if candidate.status != JobStatus.QUEUED:
                logger.info(f"Job {claimed.id} taken over from expired lease of {candidate.claimed_by}")
            logger.info(f"Job {claimed.id} claimed by worker {worker_id} (lock version {claimed.lock_version})")
            return ClaimResult(outcome=ClaimOutcome.CLAIMED, job=claimed, races_lost=races_lost)

        return ClaimResult(outcome=ClaimOutcome.CONTENTION_EXHAUSTED, races_lost=races_lost)
