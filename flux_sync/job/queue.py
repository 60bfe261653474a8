"""An unbounded queue of jobs."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable
import logging

from flux_sync.exceptions import FluxSyncException

from .job import Job

__all__ = [
    "JobQueue",
    "QueueClosed",
]

_LOGGER = logging.getLogger(__name__)


class QueueClosed(FluxSyncException):
    """Raised when adding to a queue that has been closed."""


class JobQueue:
    """First in, first out queue of jobs with no limit on its length.

    Adding a job never waits. The consumer takes jobs with `ready`, which
    waits for a job to be available and ends once the queue is closed.
    """

    def __init__(self) -> None:
        self._jobs: deque[Job] = deque()
        self._available = asyncio.Event()
        self._closed = False

    def enqueue(self, job: Job) -> None:
        """Add a job to the back of the queue."""
        if self._closed:
            raise QueueClosed(f"Queue is closed, dropping job {job.id}")
        self._jobs.append(job)
        self._available.set()

    async def next(self) -> Job | None:
        """Wait for and remove the oldest job, or return None once closed."""
        while not self._jobs:
            if self._closed:
                return None
            self._available.clear()
            await self._available.wait()
        return self._jobs.popleft()

    async def ready(self) -> AsyncIterator[Job]:
        """Yield jobs in the order they were added until the queue is closed."""
        while (job := await self.next()) is not None:
            yield job

    def for_each(self, fn: Callable[[Job], bool]) -> None:
        """Call `fn` on each queued job, oldest first, until it returns false.

        The queue is not changed; jobs added during the scan are not visited.
        """
        for job in list(self._jobs):
            if not fn(job):
                break

    def close(self) -> None:
        """Stop accepting jobs and wake up anything waiting on `ready`.

        Jobs still in the queue are dropped.
        """
        if self._jobs:
            _LOGGER.info("Dropping %d queued job(s)", len(self._jobs))
        self._closed = True
        self._jobs.clear()
        self._available.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._jobs)
