"""
Job control for bulk runs.

A leader lock row (unique on the job name) serializes runs across
processes, a JobRun row exposes progress to other processes, and a
cancellation token is checked between work units.
"""

import json
import logging
import os
import socket
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError

from lessongen.db.base import utcnow
from lessongen.db.manager import DatabaseManager
from lessongen.db.models import JobLock, JobRun
from lessongen.errors import JobAlreadyRunningError
from lessongen.generation.models import BatchSummary

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Lifecycle states of a bulk run."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    FAILED = "failed"


def default_holder() -> str:
    """Identifier of this process as a lock holder."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class CancellationToken:
    """In-process cancellation flag for a running job."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def job_run_to_dict(run: JobRun) -> dict[str, Any]:
    return {
        "job_id": run.id,
        "job_name": run.job_name,
        "holder": run.holder,
        "status": run.status,
        "created": run.created,
        "skipped": run.skipped,
        "failed": run.failed,
        "total": run.total,
        "errors": json.loads(run.errors_json) if run.errors_json else [],
        "abort_reason": run.abort_reason,
        "cancel_requested": run.cancel_requested,
        "started_at": run.created_at.isoformat() if run.created_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


class JobControl:
    """Leader lock and status record for one named job."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        job_name: str,
        lock_ttl_minutes: int = 360,
        holder: str | None = None,
    ) -> None:
        """
        Initialize job control.

        Args:
            db_manager: Database manager instance
            job_name: Lock key; one run per name at a time
            lock_ttl_minutes: Age after which a lock is presumed abandoned
            holder: Lock holder identity (defaults to host:pid:random)
        """
        self._db = db_manager
        self._job_name = job_name
        self._lock_ttl = timedelta(minutes=lock_ttl_minutes)
        self._holder = holder or default_holder()

    @property
    def job_name(self) -> str:
        return self._job_name

    @property
    def holder(self) -> str:
        return self._holder

    # --- Leader lock ---

    def acquire_lock(self) -> None:
        """
        Take the leader lock for this job.

        Expired locks are cleared first; the unique constraint on the
        lock name decides between concurrent acquirers.

        Raises:
            JobAlreadyRunningError: If another holder has the lock
        """
        now = utcnow()
        with self._db.get_session() as session:
            session.query(JobLock).filter(
                JobLock.name == self._job_name,
                JobLock.expires_at < now,
            ).delete(synchronize_session=False)

        try:
            with self._db.get_session() as session:
                session.add(
                    JobLock(name=self._job_name, holder=self._holder, expires_at=now + self._lock_ttl)
                )
        except IntegrityError:
            with self._db.get_session() as session:
                lock = session.query(JobLock).filter(JobLock.name == self._job_name).first()
                current = lock.holder if lock else None
            raise JobAlreadyRunningError(self._job_name, current) from None

        logger.info(f"Acquired lock for job '{self._job_name}' as {self._holder}")

    def refresh_lock(self) -> None:
        """Push the lock expiry forward while the run is alive."""
        with self._db.get_session() as session:
            session.query(JobLock).filter(
                JobLock.name == self._job_name,
                JobLock.holder == self._holder,
            ).update({JobLock.expires_at: utcnow() + self._lock_ttl}, synchronize_session=False)

    def release_lock(self) -> None:
        with self._db.get_session() as session:
            deleted = (
                session.query(JobLock)
                .filter(JobLock.name == self._job_name, JobLock.holder == self._holder)
                .delete(synchronize_session=False)
            )
        if deleted:
            logger.info(f"Released lock for job '{self._job_name}'")
        else:
            logger.warning(f"Lock for job '{self._job_name}' was no longer held by {self._holder}")

    # --- Status record ---

    def start_run(self, total: int) -> int:
        """Create the status row for a new run. Returns the job id."""
        with self._db.get_session() as session:
            run = JobRun(
                job_name=self._job_name,
                holder=self._holder,
                status=JobStatus.RUNNING.value,
                total=total,
            )
            session.add(run)
            session.flush()
            return run.id

    def update_progress(self, job_id: int, summary: BatchSummary) -> None:
        with self._db.get_session() as session:
            session.query(JobRun).filter(JobRun.id == job_id).update(
                {
                    JobRun.created: summary.created,
                    JobRun.skipped: summary.skipped,
                    JobRun.failed: summary.failed,
                },
                synchronize_session=False,
            )

    def finish_run(self, job_id: int, status: JobStatus, summary: BatchSummary) -> None:
        with self._db.get_session() as session:
            session.query(JobRun).filter(JobRun.id == job_id).update(
                {
                    JobRun.status: status.value,
                    JobRun.created: summary.created,
                    JobRun.skipped: summary.skipped,
                    JobRun.failed: summary.failed,
                    JobRun.errors_json: json.dumps([e.to_dict() for e in summary.errors]),
                    JobRun.abort_reason: summary.abort_reason,
                    JobRun.finished_at: utcnow(),
                },
                synchronize_session=False,
            )
        logger.info(f"Job {job_id} finished with status {status.value}")

    def cancel_requested(self, job_id: int) -> bool:
        with self._db.get_session() as session:
            run = session.get(JobRun, job_id)
            return bool(run and run.cancel_requested)

    def request_cancel(self, job_id: int) -> bool:
        """
        Flag a running job for cancellation.

        Returns:
            True if the job exists and is still running
        """
        with self._db.get_session() as session:
            run = session.get(JobRun, job_id)
            if run is None or run.status != JobStatus.RUNNING.value:
                return False
            run.cancel_requested = True
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def get_run(self, job_id: int) -> dict[str, Any] | None:
        with self._db.get_session() as session:
            run = session.get(JobRun, job_id)
            return job_run_to_dict(run) if run else None
