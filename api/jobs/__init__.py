"""
Jobs package for background task management.

Provides the job manager that tracks in-flight background work and the
cloud compute worker that executes queued workflow jobs.
"""

from .cloud_worker import CloudComputeWorker, get_cloud_worker, start_cloud_worker, stop_cloud_worker
from .manager import Job, JobManager, JobStatus, JobType, job_manager

__all__ = [
    "job_manager",
    "Job",
    "JobManager",
    "JobStatus",
    "JobType",
    "CloudComputeWorker",
    "get_cloud_worker",
    "start_cloud_worker",
    "stop_cloud_worker",
]
