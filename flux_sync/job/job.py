"""Job definitions and status."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
import uuid

from flux_sync.note import UpdateSpec, WorkloadResult

__all__ = [
    "Job",
    "JobResult",
    "JobStatus",
    "StatusString",
    "new_job_id",
]


def new_job_id() -> str:
    return str(uuid.uuid4())


class StatusString(StrEnum):
    """Processing state of a job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobResult:
    """What a finished job produced."""

    revision: str = ""
    """Revision of the commit the job pushed, empty if it made no commit."""

    spec: UpdateSpec | None = None

    result: dict[str, WorkloadResult] = field(default_factory=dict)


@dataclass
class JobStatus:
    """Status of a job and, once finished, its result or error."""

    status: StatusString
    result: JobResult | None = None
    error: str | None = None

    def __str__(self) -> str:
        if self.error:
            return f"{self.status}: {self.error}"
        return str(self.status)


@dataclass
class Job:
    """A unit of work to run under the daemon's exclusive lock."""

    id: str
    do: Callable[[], Awaitable[JobResult]]
