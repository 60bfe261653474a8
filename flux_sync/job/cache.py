"""Bounded record of job statuses."""

from collections import OrderedDict
import threading

from .job import JobStatus

__all__ = [
    "StatusCache",
]


class StatusCache:
    """Most recent status of recently seen jobs.

    When full, adding a job evicts the job that was added first. Updating the
    status of a job already in the cache does not change its position. A
    miss means the status is unknown, not that the job failed.
    """

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("Status cache size must be positive")
        self._size = size
        self._statuses: OrderedDict[str, JobStatus] = OrderedDict()
        self._lock = threading.Lock()

    def set_status(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            if job_id not in self._statuses:
                while len(self._statuses) >= self._size:
                    self._statuses.popitem(last=False)
            self._statuses[job_id] = status

    def status(self, job_id: str) -> JobStatus | None:
        with self._lock:
            return self._statuses.get(job_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._statuses)
