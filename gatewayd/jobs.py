"""
Fire-and-forget jobs for gatewayd.

Boot and restart block for seconds (kill, grace period, startup wait), so the
control API hands them to a daemon thread and returns a job id the caller can
poll at /api/jobs/{id}.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from .models import record_event

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """One boot or restart run."""

    id: str
    kind: str
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _finished: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def _finish(self, status: JobStatus, result: Any = None, error: Optional[str] = None):
        self.status = status
        self.result = result
        self.error = error
        self.finished_at = datetime.now()
        self._finished.set()

    def to_dict(self) -> dict:
        duration = None
        if self.started_at:
            duration = ((self.finished_at or datetime.now()) - self.started_at).total_seconds()
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": duration,
        }


class JobManager:
    """Runs jobs on daemon threads and remembers the most recent ones."""

    def __init__(self, keep_finished: int = 50):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._keep_finished = keep_finished

    def submit(self, kind: str, func: Callable, *args, **kwargs) -> Job:
        """Start func on a daemon thread. Its return value becomes the job result."""
        job = Job(id=uuid.uuid4().hex[:8], kind=kind)
        with self._lock:
            self._jobs[job.id] = job
            self._prune()

        def run():
            job.status = JobStatus.RUNNING
            job.started_at = datetime.now()
            logger.info(f"Job {job.id} ({kind}) started")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Job {job.id} ({kind}) failed: {e}")
                record_event(f"{kind}_failed", str(e))
                job._finish(JobStatus.FAILED, error=str(e))
                return
            job._finish(JobStatus.COMPLETED, result=result)
            logger.info(f"Job {job.id} ({kind}) completed")

        threading.Thread(target=run, name=f"gatewayd-{kind}-{job.id}", daemon=True).start()
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def recent(self, kind: Optional[str] = None, status: Optional[JobStatus] = None) -> list[Job]:
        """Jobs, newest first."""
        with self._lock:
            jobs = list(self._jobs.values())
        if kind:
            jobs = [j for j in jobs if j.kind == kind]
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        """Block until the job finishes or the timeout passes."""
        job = self.get(job_id)
        if job is not None:
            job._finished.wait(timeout)
        return job

    def _prune(self):
        finished = sorted(
            (j for j in self._jobs.values() if j.done),
            key=lambda j: j.finished_at,
        )
        for job in finished[: max(0, len(finished) - self._keep_finished)]:
            del self._jobs[job.id]


# Global job manager instance
job_manager = JobManager()
