import pytest
import threading
from datetime import timedelta
from leasequeue.leasing.claim import ClaimCoordinator
from leasequeue.leasing.service import JobLeaseService
from leasequeue.models.job import ClaimOutcome, JobStatus
from conftest import LEASE, T0


def test_claim_empty_queue_is_not_an_error(service):
    result = service.claim("w1")
    assert result.outcome == ClaimOutcome.EMPTY
    assert result.success is False
    assert result.job is None


def test_claim_sets_lease_fields(service, enqueue, clock):
    job = enqueue()
    result = service.claim("w1", lease_duration=LEASE)

    assert result.success
    assert result.job_id == job.id
    claimed = result.job
    assert claimed.status == JobStatus.CLAIMED
    assert claimed.claimed_by == "w1"
    assert claimed.claimed_at == T0
    assert claimed.lock_expires_at == T0 + LEASE
    assert claimed.lock_version == 1
    assert result.lock_version == 1


def test_claim_orders_by_priority_then_age(service, enqueue, clock):
    x = enqueue(priority=1)
    clock.advance(seconds=1)
    y = enqueue(priority=1)
    clock.advance(seconds=1)
    enqueue(priority=2)

    assert service.claim("w1").job_id == x.id
    assert service.claim("w2").job_id == y.id


def test_lower_priority_value_wins_over_age(service, enqueue, clock):
    enqueue(priority=5)
    clock.advance(seconds=1)
    urgent = enqueue(priority=0)
    assert service.claim("w1").job_id == urgent.id


def test_claim_tenant_filter(service, enqueue):
    enqueue(priority=0, tenant_scope="site-a")
    b = enqueue(priority=1, tenant_scope="site-b")

    result = service.claim("w1", tenant_scope="site-b")
    assert result.job_id == b.id
    assert service.claim("w2", tenant_scope="site-b").outcome == ClaimOutcome.EMPTY
    assert service.claim("w3", tenant_scope="site-c").outcome == ClaimOutcome.EMPTY


def test_active_lease_is_never_a_candidate(service, enqueue, clock):
    enqueue()
    service.claim("w1", lease_duration=LEASE)

    clock.advance(minutes=4, seconds=59)
    assert service.claim("w2").outcome == ClaimOutcome.EMPTY


def test_expired_lease_can_be_taken_over(service, enqueue, clock):
    job = enqueue()
    service.claim("w1", lease_duration=LEASE)
    service.mark_running(job.id, "w1")

    clock.advance(minutes=5, seconds=1)
    result = service.claim("w2", lease_duration=LEASE)

    assert result.job_id == job.id
    assert result.job.claimed_by == "w2"
    assert result.job.status == JobStatus.CLAIMED
    assert result.job.lock_version == 2


def test_takeover_counts_as_a_lost_delivery(service, enqueue, clock):
    job = enqueue(max_delivery_attempts=3)
    service.claim("w1", lease_duration=LEASE)
    clock.advance(minutes=6)

    result = service.claim("w2", lease_duration=LEASE)

    assert result.job_id == job.id
    assert result.job.delivery_attempts == 1


def test_crash_looping_job_is_not_redelivered_forever(service, enqueue, clock):
    # Workers keep taking the job over without a sweep in between.
    job = enqueue(max_delivery_attempts=3)
    assert service.claim("w1", lease_duration=LEASE).job_id == job.id
    clock.advance(minutes=6)
    assert service.claim("w2", lease_duration=LEASE).job_id == job.id
    clock.advance(minutes=6)
    assert service.claim("w3", lease_duration=LEASE).job_id == job.id
    clock.advance(minutes=6)

    assert service.claim("w4", lease_duration=LEASE).outcome == ClaimOutcome.EMPTY
    assert service.recover_expired_leases().failed == [job.id]
    stored = service.storage.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.delivery_attempts == 3


def test_lock_version_increases_on_every_claim(service, enqueue, clock):
    job = enqueue()
    versions = []
    for worker in ("w1", "w2", "w3"):
        versions.append(service.claim(worker, lease_duration=LEASE).lock_version)
        clock.advance(minutes=6)
    assert versions == [1, 2, 3]
    assert service.storage.get_job(job.id).lock_version == 3


def test_terminal_jobs_are_never_claimed(service, enqueue, clock):
    done = enqueue()
    service.claim("w1")
    service.release(done.id, "w1", JobStatus.COMPLETED)

    clock.advance(days=1)
    assert service.claim("w2").outcome == ClaimOutcome.EMPTY


def test_stale_snapshot_loses_the_swap(service, storage, enqueue, clock):
    job = enqueue()
    stale = storage.get_job(job.id)
    service.claim("winner")

    assert service.coordinator.try_claim(stale, "loser", clock(), LEASE) is None
    assert storage.get_job(job.id).claimed_by == "winner"


def test_stale_snapshot_cannot_resurrect_a_released_job(service, storage, enqueue, clock):
    job = enqueue()
    service.claim("w1", lease_duration=LEASE)
    clock.advance(minutes=6)
    # Read while the lease looks expired, then the owner finishes anyway.
    stale = service.coordinator.select_candidate(clock())
    assert service.release(job.id, "w1", JobStatus.COMPLETED)

    assert service.coordinator.try_claim(stale, "w2", clock(), LEASE) is None
    assert storage.get_job(job.id).status == JobStatus.COMPLETED


class RacingCoordinator(ClaimCoordinator):
    """Hands out a pre-read snapshot for the first `stale_reads` selections"""

    def __init__(self, storage, clock, stale, stale_reads):
        super().__init__(storage, clock)
        self.stale = stale
        self.stale_reads = stale_reads

    def select_candidate(self, now, tenant_scope=None):
        if self.stale_reads:
            self.stale_reads -= 1
            return self.stale
        return super().select_candidate(now, tenant_scope)


def test_lost_race_reselects_next_job(service, storage, enqueue, clock):
    first = enqueue(priority=0)
    second = enqueue(priority=1)
    stale = storage.get_job(first.id)
    service.claim("winner")

    racer = RacingCoordinator(storage, clock, stale, stale_reads=1)
    result = racer.claim("loser")

    assert result.success
    assert result.job_id == second.id
    assert result.races_lost == 1


def test_claim_gives_up_after_retry_budget(service, storage, enqueue, clock):
    job = enqueue()
    stale = storage.get_job(job.id)
    enqueue()
    service.claim("winner")

    racer = RacingCoordinator(storage, clock, stale, stale_reads=10)
    result = racer.claim("loser", claim_retry_budget=3)

    assert result.outcome == ClaimOutcome.CONTENTION_EXHAUSTED
    assert result.races_lost == 3
    assert result.success is False


def test_claim_rejects_zero_retry_budget(service):
    with pytest.raises(ValueError):
        service.claim("w1", claim_retry_budget=0)


def test_concurrent_claims_have_exactly_one_winner(storage, enqueue):
    job = enqueue()
    workers = 8
    barrier = threading.Barrier(workers)
    results = {}

    def attempt(worker_id):
        svc = JobLeaseService(storage)
        barrier.wait()
        results[worker_id] = svc.claim(worker_id, lease_duration=timedelta(minutes=5))

    threads = [threading.Thread(target=attempt, args=(f"w{i}",)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [w for w, r in results.items() if r.success]
    assert len(winners) == 1
    assert all(not r.success for w, r in results.items() if w != winners[0])
    final = storage.get_job(job.id)
    assert final.claimed_by == winners[0]
    assert final.lock_version == 1
