import pytest
import tempfile
import os
from datetime import datetime, timedelta
from leasequeue.leasing.service import JobLeaseService
from leasequeue.models.job import Job
from leasequeue.storage.database import Storage

T0 = datetime(2026, 1, 27, 12, 0, 0)
LEASE = timedelta(minutes=5)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_db():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name
    yield db_path
    try:
        os.unlink(db_path)
    except PermissionError:
        pass  # File might still be locked, will be cleaned up later


@pytest.fixture
def storage(temp_db):
    return Storage(temp_db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(storage, clock):
    return JobLeaseService(storage, clock)


@pytest.fixture
def enqueue(storage, clock):
    """Insert a queued job; created_at defaults to the fake clock's current time"""
    def _enqueue(command="echo test", **fields):
        fields.setdefault("created_at", clock())
        return storage.add_job(Job(command=command, **fields))
    return _enqueue
