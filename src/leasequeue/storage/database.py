from sqlalchemy import create_engine, Column, String, Integer, DateTime, Text, JSON, Index, func, Enum as SQLEnum
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
import logging
import os
from typing import Any, Dict, List, Optional, Sequence
from ..errors import StoreError
from ..models.job import Job, JobRecord, JobStatus, utcnow

Base = declarative_base()
logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".leasequeue", "jobs.db")


class JobModel(Base):
    __tablename__ = "job_queue"

    id = Column(String, primary_key=True)
    command = Column(Text, nullable=False)
    tenant_scope = Column(String, nullable=True, index=True)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    claimed_by = Column(String, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)
    lock_version = Column(Integer, nullable=False, default=0)
    delivery_attempts = Column(Integer, nullable=False, default=0)
    max_delivery_attempts = Column(Integer, nullable=False, default=3)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_job_queue_status_priority", "status", "priority", "created_at"),
        Index("idx_job_queue_lock_expires", "lock_expires_at"),
    )


def _database_url(db_path: Optional[str]) -> str:
    if db_path and "://" in db_path:
        return db_path
    if not db_path:
        db_path = DEFAULT_DB_PATH
        os.makedirs(os.path.dirname(db_path), exist_ok=True)
    return f"sqlite:///{db_path}"


class Storage:
    """Row store for jobs.

    Every write that touches lease state goes through `conditional_update`,
    a single UPDATE guarded by a predicate whose affected row count tells the
    caller whether it won.
    """

    def __init__(self, db_path: str = None):
        url = _database_url(db_path)
        connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine)

    def __del__(self):
        if hasattr(self, 'engine'):
            self.engine.dispose()

    def add_job(self, job: Job) -> JobRecord:
        session = self.Session()
        try:
            row = JobModel(
                id=job.id,
                command=job.command,
                tenant_scope=job.tenant_scope,
                status=JobStatus.QUEUED,
                priority=job.priority,
                created_at=job.created_at,
                updated_at=job.created_at,
                lock_version=0,
                delivery_attempts=0,
                max_delivery_attempts=job.max_delivery_attempts,
            )
            session.add(row)
            session.commit()
            return JobRecord.model_validate(row)
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError("add_job", e) from e
        finally:
            session.close()

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        session = self.Session()
        try:
            row = session.query(JobModel).filter(JobModel.id == job_id).first()
            return JobRecord.model_validate(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError("get_job", e) from e
        finally:
            session.close()

    def list_jobs(self, status: JobStatus = None, tenant_scope: str = None, limit: int = None) -> List[JobRecord]:
        session = self.Session()
        try:
            query = session.query(JobModel)
            if status:
                query = query.filter(JobModel.status == status)
            if tenant_scope:
                query = query.filter(JobModel.tenant_scope == tenant_scope)
            query = query.order_by(JobModel.priority.asc(), JobModel.created_at.asc())
            if limit:
                query = query.limit(limit)
            return [JobRecord.model_validate(row) for row in query.all()]
        except SQLAlchemyError as e:
            raise StoreError("list_jobs", e) from e
        finally:
            session.close()

    def count_by_status(self) -> Dict[JobStatus, int]:
        session = self.Session()
        try:
            rows = session.query(JobModel.status, func.count(JobModel.id)).group_by(JobModel.status).all()
            counts = {status: 0 for status in JobStatus}
            for status, count in rows:
                counts[status] = count
            return counts
        except SQLAlchemyError as e:
            raise StoreError("count_by_status", e) from e
        finally:
            session.close()

    def find_first(self, conditions: Sequence[Any], order_by: Sequence[Any] = ()) -> Optional[JobRecord]:
        """Snapshot of the first row matching `conditions`; no lock is taken"""
        session = self.Session()
        try:
            query = session.query(JobModel).filter(*conditions)
            if order_by:
                query = query.order_by(*order_by)
            row = query.first()
            return JobRecord.model_validate(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError("find_first", e) from e
        finally:
            session.close()

    def find_all(self, conditions: Sequence[Any]) -> List[JobRecord]:
        session = self.Session()
        try:
            rows = session.query(JobModel).filter(*conditions).all()
            return [JobRecord.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError("find_all", e) from e
        finally:
            session.close()

    def conditional_update(self, job_id: str, conditions: Sequence[Any], values: Dict[str, Any]) -> Optional[JobRecord]:
        """Apply `values` to the job only if `conditions` still hold.

        Returns the updated row, or None when the predicate did not match
        (or the job does not exist).
        """
        session = self.Session()
        try:
            matched = (
                session.query(JobModel)
                .filter(JobModel.id == job_id, *conditions)
                .update(values, synchronize_session=False)
            )
            if matched != 1:
                session.rollback()
                return None
            row = session.query(JobModel).filter(JobModel.id == job_id).one()
            record = JobRecord.model_validate(row)
            session.commit()
            return record
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Conditional update of job {job_id} failed: {str(e)}")
            raise StoreError("conditional_update", e) from e
        finally:
            session.close()
