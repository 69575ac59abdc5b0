import os
import subprocess
import threading
import time
import signal
import uuid
from datetime import timedelta
from typing import Optional
from ..config import LeaseConfig
from ..errors import StoreError
from ..leasing.service import JobLeaseService
from ..models.job import JobRecord, JobStatus
import logging


class LeaseHeartbeat:
    """Background thread that keeps one job's lease alive while it executes"""

    def __init__(self, service: JobLeaseService, job: JobRecord, worker_id: str,
                 interval: float, extension: timedelta, on_lost=None):
        self.service = service
        self.job = job
        self.worker_id = worker_id
        self.interval = interval
        self.extension = extension
        self.on_lost = on_lost
        self.lost = threading.Event()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self.logger = logging.getLogger(f"heartbeat_{worker_id}")

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, *exc):
        self._stop_event.set()
        self._thread.join()
        return False

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                result = self.service.heartbeat(
                    self.job.id, self.worker_id, self.extension, lock_version=self.job.lock_version
                )
            except StoreError as e:
                # The lease may still be valid; try again next tick.
                self.logger.error(f"Heartbeat for job {self.job.id} failed: {str(e)}")
                continue
            if not result.success:
                self.lost.set()
                if self.on_lost:
                    self.on_lost()
                return


class Worker:
    def __init__(self, worker_id: str, service: JobLeaseService, config: LeaseConfig = None,
                 tenant_scope: Optional[str] = None):
        self.worker_id = worker_id
        self.service = service
        self.config = config or LeaseConfig()
        self.tenant_scope = tenant_scope
        self.running = False
        self._stop_event = threading.Event()
        self.current_job = None
        self._process = None
        self.logger = logging.getLogger(f"worker_{worker_id}")

    def start(self):
        self.running = True
        self._stop_event.clear()
        self.run()

    def stop(self):
        self.running = False
        self._stop_event.set()

    def _kill_current(self):
        """Kill the running command together with everything it spawned"""
        process = self._process
        if process and process.poll() is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass  # exited between poll and kill

    def execute_command(self, command: str) -> tuple[int, str, str]:
        """Execute a shell command and return exit code, stdout, and stderr"""
        try:
            self._process = subprocess.Popen(
                command,
                shell=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
            stdout, stderr = self._process.communicate()
            return self._process.returncode, stdout, stderr
        except OSError as e:
            return -1, "", str(e)
        finally:
            self._process = None

    def process_job(self, job: JobRecord) -> Optional[JobStatus]:
        """Run a claimed job to a terminal state.

        Returns the status the job was released with, or None when the lease
        was lost and the job abandoned.
        """
        if not job:
            return None

        self.current_job = job
        token = job.lock_version
        try:
            if not self.service.mark_running(job.id, self.worker_id, lock_version=token):
                self.logger.warning(f"Lost job {job.id} before it started")
                return None

            heartbeat = LeaseHeartbeat(
                self.service, job, self.worker_id,
                interval=self.config.heartbeat_seconds,
                extension=self.config.lease_duration,
                on_lost=self._kill_current,
            )
            with heartbeat:
                exit_code, stdout, stderr = self.execute_command(job.command)

            if heartbeat.lost.is_set():
                self.logger.warning(f"Lease on job {job.id} lost during execution - abandoning")
                return None

            if exit_code == 0:
                final_status = JobStatus.COMPLETED
                released = self.service.release(
                    job.id, self.worker_id, final_status,
                    result={"exit_code": exit_code, "output": stdout.strip()},
                    lock_version=token,
                )
            else:
                final_status = JobStatus.FAILED
                released = self.service.release(
                    job.id, self.worker_id, final_status,
                    result={"exit_code": exit_code, "output": stdout.strip()},
                    error_message=stderr.strip() or f"Command exited with code {exit_code}",
                    lock_version=token,
                )
            return final_status if released else None

        except StoreError as e:
            self.logger.error(f"Error processing job {job.id}: {str(e)}")
            return None

        except Exception as e:
            self.logger.error(f"Error processing job {job.id}: {str(e)}")
            return self._abandon(job, token, e)

        finally:
            self.current_job = None

    def _abandon(self, job: JobRecord, token: int, error: Exception) -> Optional[JobStatus]:
        """Release a job we can no longer run as FAILED instead of leaving it to expire"""
        try:
            released = self.service.release(
                job.id, self.worker_id, JobStatus.FAILED,
                error_message=f"Worker error: {error}",
                lock_version=token,
            )
        except StoreError as e:
            self.logger.error(f"Could not release job {job.id}: {str(e)}")
            return None
        return JobStatus.FAILED if released else None

    def run_once(self) -> bool:
        """Claim and process at most one job; False when nothing was claimed"""
        result = self.service.claim(
            self.worker_id,
            tenant_scope=self.tenant_scope,
            lease_duration=self.config.lease_duration,
            claim_retry_budget=self.config.claim_retry_budget,
        )
        if not result.success:
            return False
        self.process_job(result.job)
        return True

    def run(self):
        """Main worker loop"""
        while self.running:
            try:
                if not self.run_once():
                    # Nothing claimable, back off before polling again
                    self._stop_event.wait(self.config.poll_interval)

                if self._stop_event.is_set():
                    break

            except Exception as e:
                self.logger.error(f"Worker error: {str(e)}")
                time.sleep(1)  # Prevent tight loop on persistent errors


class WorkerManager:
    def __init__(self, service: JobLeaseService, config: LeaseConfig = None,
                 tenant_scope: Optional[str] = None, install_signal_handlers: bool = True):
        self.service = service
        self.config = config or LeaseConfig()
        self.tenant_scope = tenant_scope
        self.workers = {}
        self._lock = threading.Lock()
        self._previous_handlers = {}

        if install_signal_handlers:
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._previous_handlers[sig] = signal.signal(sig, self.handle_shutdown)

    def restore_signal_handlers(self):
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers = {}

    def start_workers(self, count: int = 1):
        """Start the specified number of worker threads"""
        with self._lock:
            for _ in range(count):
                worker_id = f"worker-{uuid.uuid4().hex[:8]}"
                worker = Worker(worker_id, self.service, self.config, self.tenant_scope)
                thread = threading.Thread(target=worker.start, daemon=True)
                self.workers[worker_id] = (worker, thread)
                thread.start()

    def stop_workers(self):
        """Stop all workers gracefully"""
        with self._lock:
            for worker, thread in self.workers.values():
                worker.stop()

            # Wait for all workers to finish their current jobs
            for worker, thread in self.workers.values():
                thread.join()

            self.workers.clear()

    def wait(self):
        """Block until every worker thread has exited"""
        while self.get_active_workers_count():
            time.sleep(0.5)

    def handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logging.getLogger(__name__).info("Shutting down workers gracefully...")
        threading.Thread(target=self.stop_workers, daemon=True).start()

    def get_active_workers_count(self):
        """Get the count of currently active workers"""
        with self._lock:
            return sum(1 for _, thread in self.workers.values() if thread.is_alive())
