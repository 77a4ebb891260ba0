"""
Job manager for background tasks in the NeuroData Hub backend.

Cloud compute jobs run in a thread pool. Every state change is pushed
to WebSocket subscribers of ``job:{job_id}``. The durable job record
lives in ``cloud_compute_jobs``; this manager only tracks jobs while
they are in flight in this process.
"""

from __future__ import annotations

import asyncio
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from api.shared.logger import get_logger

logger = get_logger(__name__)


class JobStatus(str, Enum):
    """Status of a background job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    """Type of background job."""

    CLOUD_COMPUTE = "cloud_compute"


@dataclass
class Job:
    """Represents a background job."""

    id: str
    type: JobType
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    progress: float = 0.0
    progress_message: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    error_traceback: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    cancellation_requested: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "progress": self.progress,
            "progress_message": self.progress_message,
            "result": self.result,
            "error": self.error,
            "metrics": self.metrics,
            "duration_seconds": self._get_duration(),
        }

    def _get_duration(self) -> float | None:
        """Get job duration in seconds."""
        if not self.started_at:
            return None

        end_time = self.completed_at or datetime.now()
        return (end_time - self.started_at).total_seconds()


ProgressCallback = Callable[[float, str], bool]


class JobManager:
    """
    Tracks in-flight background jobs and runs them on a thread pool.

    Notifications are delivered on the event loop passed to ``bind_loop``
    (the API server loop); without one, each notification runs on a
    short-lived loop in the worker thread.
    """

    def __init__(self, max_workers: int = 3):
        """Initialize the job manager.

        Args:
            max_workers: Maximum number of concurrent jobs
        """
        self._jobs: dict[str, Job] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cloud-job")
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        """Deliver WebSocket notifications on ``loop``."""
        self._loop = loop

    def create_job(
        self,
        job_type: JobType,
        config: dict[str, Any],
        job_id: str | None = None,
    ) -> Job:
        """Create a new job.

        Args:
            job_type: Type of job
            config: Job configuration
            job_id: Reuse an external id (e.g. the ``cloud_compute_jobs`` row id)

        Returns:
            The created Job instance
        """
        job_id = job_id or f"{job_type.value}_{uuid.uuid4().hex[:8]}"

        job = Job(
            id=job_id,
            type=job_type,
            status=JobStatus.PENDING,
            created_at=datetime.now(),
            config=config,
        )

        with self._lock:
            self._jobs[job_id] = job

        return job

    def submit_job(
        self,
        job: Job,
        task_fn: Callable[[Job, ProgressCallback], Any],
    ) -> Job:
        """Submit a job for execution.

        Args:
            job: The job to execute
            task_fn: Function to execute, receives (job, progress_callback)

        Returns:
            The job instance
        """
        self._executor.submit(self._execute_job, job, task_fn)
        return job

    def _execute_job(
        self,
        job: Job,
        task_fn: Callable[[Job, ProgressCallback], Any],
    ) -> None:
        """Run ``task_fn`` and record the outcome on ``job``."""
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        self._publish(job)

        def progress_callback(progress: float, message: str = "") -> bool:
            """Report progress; returns False once cancellation was requested."""
            job.progress = min(max(progress, 0.0), 100.0)
            job.progress_message = message
            self._publish(job)
            return not job.cancellation_requested

        try:
            result = task_fn(job, progress_callback)

            if job.cancellation_requested:
                job.status = JobStatus.CANCELLED
                job.error = "Job was cancelled"
            else:
                job.result = result if isinstance(result, dict) else {"result": result}
                if job.result.get("success", True):
                    job.status = JobStatus.COMPLETED
                else:
                    job.status = JobStatus.FAILED
                    job.error = job.result.get("error") or "Job failed"
                job.progress = 100.0

        except Exception as e:
            logger.exception("Job %s raised", job.id)
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.error_traceback = traceback.format_exc()

        finally:
            job.completed_at = datetime.now()
            self._publish(job)

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(
        self,
        job_type: JobType | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filtering, newest first."""
        with self._lock:
            jobs = list(self._jobs.values())

        if job_type:
            jobs = [j for j in jobs if j.type == job_type]
        if status:
            jobs = [j for j in jobs if j.status == status]

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def active_count(self) -> int:
        """Number of jobs pending or running in this process."""
        with self._lock:
            return sum(
                1 for j in self._jobs.values() if j.status in (JobStatus.PENDING, JobStatus.RUNNING)
            )

    def cancel_job(self, job_id: str) -> bool:
        """Request cancellation of a job.

        Returns:
            True if cancellation was requested, False if job not found or finished
        """
        job = self.get_job(job_id)
        if not job:
            return False

        if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
            return False

        job.cancellation_requested = True

        if job.status == JobStatus.PENDING:
            job.status = JobStatus.CANCELLED
            job.completed_at = datetime.now()
            self._publish(job)

        return True

    def update_job_metrics(self, job_id: str, metrics: dict[str, Any]) -> bool:
        """Merge ``metrics`` into the job and notify subscribers."""
        job = self.get_job(job_id)
        if not job:
            return False

        job.metrics.update(metrics)
        self._dispatch(self._metrics_notification(job, metrics))
        return True

    def _publish(self, job: Job) -> None:
        self._dispatch(self._status_notification(job))

    @staticmethod
    async def _status_notification(job: Job) -> None:
        from websocket import (
            notify_job_cancelled,
            notify_job_completed,
            notify_job_failed,
            notify_job_progress,
            notify_job_started,
        )

        if job.status == JobStatus.RUNNING and job.progress == 0:
            await notify_job_started(job.id, job.to_dict())
        elif job.status == JobStatus.RUNNING:
            await notify_job_progress(job.id, job.progress, job.progress_message, job.metrics)
        elif job.status == JobStatus.COMPLETED:
            await notify_job_completed(job.id, job.result or {})
        elif job.status == JobStatus.FAILED:
            await notify_job_failed(job.id, job.error or "Unknown error")
        elif job.status == JobStatus.CANCELLED:
            await notify_job_cancelled(job.id)

    @staticmethod
    async def _metrics_notification(job: Job, metrics: dict[str, Any]) -> None:
        from websocket import notify_job_metrics

        await notify_job_metrics(job.id, metrics)

    def _dispatch(self, coro) -> None:
        """Run a notification coroutine on the bound loop or a private one."""
        loop = self._loop
        try:
            if loop is not None and loop.is_running():
                asyncio.run_coroutine_threadsafe(coro, loop)
            else:
                asyncio.run(coro)
        except Exception as e:
            logger.error("Error dispatching WebSocket notification: %s", e)

    def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        """Forget finished jobs older than ``max_age_hours``.

        Returns:
            Number of jobs removed
        """
        now = datetime.now()
        finished = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in finished
                and job.completed_at
                and (now - job.completed_at).total_seconds() / 3600 > max_age_hours
            ]
            for job_id in expired:
                del self._jobs[job_id]

        return len(expired)

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the job manager."""
        self._executor.shutdown(wait=wait)


# Global job manager instance
job_manager = JobManager()
