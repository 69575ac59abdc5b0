from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from uuid import uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every column in the store uses"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    QUEUED = "queued"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.CLAIMED, JobStatus.RUNNING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(BaseModel):
    """A job as handed in by a submitter, before it is persisted"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    command: str
    tenant_scope: Optional[str] = None
    priority: int = 0  # lower runs first
    max_delivery_attempts: int = Field(default=3, ge=1)
    created_at: datetime = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Point-in-time snapshot of a row in the job table"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    command: str
    tenant_scope: Optional[str] = None
    status: JobStatus
    priority: int
    created_at: datetime
    updated_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    lock_version: int = 0
    delivery_attempts: int = 0
    max_delivery_attempts: int = 3
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None

    def lease_active(self, now: datetime) -> bool:
        return (
            self.status in ACTIVE_STATUSES
            and self.claimed_by is not None
            and self.lock_expires_at is not None
            and self.lock_expires_at > now
        )


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    EMPTY = "empty"
    CONTENTION_EXHAUSTED = "contention_exhausted"


class ClaimResult(BaseModel):
    outcome: ClaimOutcome
    job: Optional[JobRecord] = None
    races_lost: int = 0

    @property
    def success(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED

    @property
    def job_id(self) -> Optional[str]:
        return self.job.id if self.job else None

    @property
    def lock_version(self) -> Optional[int]:
        """Fencing token for the lease this claim obtained"""
        return self.job.lock_version if self.job else None


class HeartbeatResult(BaseModel):
    success: bool
    lock_expires_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def lock_extended(self) -> bool:
        return self.success


class RecoveryResult(BaseModel):
    recovered_count: int = 0
    job_ids: List[str] = Field(default_factory=list)
    requeued: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)  # job ids whose write raised


class LockStatus(BaseModel):
    locked: bool
    owner_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    status: Optional[JobStatus] = None
    claimed_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    lock_version: Optional[int] = None
