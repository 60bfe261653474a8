"""Asynchronous jobs and the record of their outcomes.

Jobs are queued with `JobQueue`, run one at a time by the daemon, and their
status is kept in a bounded `StatusCache` so callers can poll for it.
"""

from .cache import StatusCache
from .job import Job, JobResult, JobStatus, StatusString, new_job_id
from .queue import JobQueue, QueueClosed

__all__ = [
    "Job",
    "JobResult",
    "JobStatus",
    "JobQueue",
    "QueueClosed",
    "StatusCache",
    "StatusString",
    "new_job_id",
]
