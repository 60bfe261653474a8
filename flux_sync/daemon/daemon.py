"""The daemon that keeps a cluster in sync with a git repository.

The daemon runs two workers:

- The sync worker runs a sync cycle every `DaemonConfig.sync_interval`
  seconds, or sooner when `ask_for_sync` is called or a job finishes.
- The job worker runs queued jobs one at a time, such as a change to the
  manifests that is committed and pushed to the repository.

Both workers take the `exclusive` lock before using the repository or the
cluster, so a job never runs in the middle of a sync cycle. A failed cycle is
logged and retried on the next trigger; a failed job is recorded in its
status and not retried.
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
import contextlib
from datetime import datetime, timezone
import logging

from flux_sync.cluster.apply import ApplyEngine
from flux_sync.cluster.cluster import Cluster
from flux_sync.config import DaemonConfig
from flux_sync.event import (
    CommitEventMetadata,
    Event,
    EventType,
    EventWriter,
    LoggingEventWriter,
)
from flux_sync.exceptions import (
    FluxSyncException,
    InputException,
    SyncError,
    UnknownJobError,
)
from flux_sync.git_repo import Checkout, GitRepo
from flux_sync.job import (
    Job,
    JobQueue,
    JobResult,
    JobStatus,
    StatusCache,
    StatusString,
    new_job_id,
)
from flux_sync.note import (
    Note,
    UpdateSpec,
    UpdateType,
    WorkloadResult,
    affected_resources,
)
from flux_sync.sync_state import SyncState

from .ratchet import SyncRatchet
from .sync import Syncer, SyncResult

__all__ = [
    "Daemon",
    "UpdateFunc",
    "JobFunc",
]

_LOGGER = logging.getLogger(__name__)

UpdateFunc = Callable[[Checkout], Awaitable[dict[str, WorkloadResult]]]
"""Changes files in a working clone and reports the outcome per workload."""

JobFunc = Callable[[str], Awaitable[JobResult]]
"""The body of a job, called with the job id."""


def _commit_message(spec: UpdateSpec) -> str:
    if spec.cause.message:
        return spec.cause.message
    return f"Auto-update via flux-sync ({spec.type})"


class Daemon:
    """Coordinates sync cycles and jobs for one repository and cluster."""

    def __init__(
        self,
        repo: GitRepo,
        cluster: Cluster,
        sync_state: SyncState,
        config: DaemonConfig | None = None,
        events: EventWriter | None = None,
    ) -> None:
        self._repo = repo
        self._config = config or DaemonConfig()
        self._sync_state = sync_state
        self._events = events or LoggingEventWriter()
        self._engine = ApplyEngine(cluster.transport, cluster.kinds)
        self._syncer = Syncer(
            repo, cluster, self._engine, SyncRatchet(sync_state), self._events
        )
        self._jobs = JobQueue()
        self._statuses = StatusCache(self._config.job_status_cache_size)
        self._lock = asyncio.Lock()
        self._sync_soon = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def engine(self) -> ApplyEngine:
        return self._engine

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncGenerator[None, None]:
        """Hold the lock that serializes use of the repository and cluster."""
        async with self._lock:
            yield

    async def start(self) -> None:
        """Mirror the repository and start the workers."""
        await self._repo.start()
        if self._repo.config.readonly:
            _LOGGER.info("Repository is read-only; jobs that commit will fail")
        self._tasks = [
            asyncio.create_task(self._sync_loop(), name="sync-loop"),
            asyncio.create_task(self._job_loop(), name="job-loop"),
        ]
        self.ask_for_sync()

    async def close(self) -> None:
        """Stop the workers and remove the mirror."""
        self._jobs.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._repo.close()

    def ask_for_sync(self) -> None:
        """Run a sync cycle soon, or let a pending request stand."""
        self._sync_soon.set()

    async def sync_once(self) -> SyncResult:
        """Fetch from upstream and run a sync cycle up to the branch head.

        The fetch happens even when the previous cycle failed, so a fix pushed
        upstream is picked up by the next attempt.
        """
        async with self.exclusive():
            await self._repo.refresh()
            head = await self._repo.branch_head()
            try:
                return await asyncio.wait_for(
                    self._syncer.sync(head), self._config.sync_timeout
                )
            except asyncio.TimeoutError as err:
                raise FluxSyncException(
                    f"Sync timed out after {self._config.sync_timeout}s"
                ) from err

    async def _sync_loop(self) -> None:
        while True:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._sync_soon.wait(), self._config.sync_interval
                )
            self._sync_soon.clear()
            try:
                result = await self.sync_once()
            except FluxSyncException as err:
                _LOGGER.error("Sync failed: %s", err)
                continue
            except Exception as err:
                _LOGGER.exception("Sync failed unexpectedly: %s", err)
                continue
            if result.errors:
                _LOGGER.warning(
                    "Sync of %s finished with errors: %s",
                    result.change_set.new_revision,
                    SyncError(result.errors),
                )

    async def _job_loop(self) -> None:
        async for job in self._jobs.ready():
            _LOGGER.info("Job %s in progress (%d queued)", job.id, len(self._jobs))
            try:
                await job.do()
            except FluxSyncException as err:
                _LOGGER.error("Job %s failed: %s", job.id, err)
                continue
            except Exception as err:
                _LOGGER.exception("Job %s failed unexpectedly: %s", job.id, err)
                continue
            _LOGGER.info("Job %s done", job.id)
            try:
                async with self.exclusive():
                    await self._repo.refresh()
            except Exception as err:
                _LOGGER.error("Refresh after job %s failed: %s", job.id, err)
            self.ask_for_sync()

    async def _execute_job(self, job_id: str, do: JobFunc) -> JobResult:
        self._statuses.set_status(job_id, JobStatus(StatusString.RUNNING))
        try:
            async with self.exclusive():
                result = await asyncio.wait_for(do(job_id), self._config.job_timeout)
        except asyncio.TimeoutError as err:
            message = f"Job timed out after {self._config.job_timeout}s"
            self._statuses.set_status(
                job_id, JobStatus(StatusString.FAILED, error=message)
            )
            raise FluxSyncException(message) from err
        except FluxSyncException as err:
            self._statuses.set_status(
                job_id, JobStatus(StatusString.FAILED, error=str(err))
            )
            raise
        except Exception as err:
            message = f"{type(err).__name__}: {err}"
            self._statuses.set_status(
                job_id, JobStatus(StatusString.FAILED, error=message)
            )
            raise
        self._statuses.set_status(
            job_id, JobStatus(StatusString.SUCCEEDED, result=result)
        )
        return result

    def queue_job(self, do: JobFunc) -> str:
        """Queue a job and return its id without waiting for it to run."""
        job_id = new_job_id()

        async def run() -> JobResult:
            return await self._execute_job(job_id, do)

        self._jobs.enqueue(Job(job_id, run))
        self._statuses.set_status(job_id, JobStatus(StatusString.QUEUED))
        return job_id

    def queued_jobs(self) -> list[str]:
        """Return the ids of jobs waiting to run, oldest first."""
        ids: list[str] = []

        def collect(job: Job) -> bool:
            ids.append(job.id)
            return True

        self._jobs.for_each(collect)
        return ids

    def update_manifests(
        self, spec: UpdateSpec, update: UpdateFunc | None = None
    ) -> str:
        """Queue a change to the repository and return the job id.

        A `sync` spec only refreshes the repository and asks for a sync;
        anything else needs `update` to make the change in a working clone.
        """
        if spec.update_type == UpdateType.SYNC:
            return self.queue_job(self._manual_sync)
        if update is None:
            raise InputException(f"No update given for '{spec.type}' change")
        return self.queue_job(self._update_job(spec, update))

    async def _manual_sync(self, job_id: str) -> JobResult:
        await self._repo.refresh()
        head = await self._repo.branch_head()
        return JobResult(revision=head, spec=UpdateSpec(type=UpdateType.SYNC))

    def _update_job(self, spec: UpdateSpec, update: UpdateFunc) -> JobFunc:
        async def do(job_id: str) -> JobResult:
            started = datetime.now(timezone.utc)
            async with self._repo.clone() as checkout:
                result = await update(checkout)
                if not await checkout.is_dirty():
                    _LOGGER.info("Job %s made no changes", job_id)
                    return JobResult(spec=spec, result=result)
                note = Note(job_id=job_id, spec=spec, result=result)
                revision = await checkout.commit_and_push(
                    _commit_message(spec), note.to_json()
                )
            await self._events.log_event(
                Event(
                    type=EventType.COMMIT,
                    started_at=started,
                    ended_at=started,
                    resource_ids=affected_resources(result),
                    metadata=CommitEventMetadata(
                        revision=revision, spec=spec, result=result
                    ),
                )
            )
            return JobResult(revision=revision, spec=spec, result=result)

        return do

    async def job_status(self, job_id: str) -> JobStatus:
        """Return the status of a job.

        Jobs that are no longer in the status cache are looked for in the
        notes on the branch, which only finds jobs that pushed a commit.
        """
        if (status := self._statuses.status(job_id)) is not None:
            return status
        notes = await self._repo.note_rev_list()
        commits = await self._repo.commits_before(
            self._repo.config.branch, self._repo.config.paths
        )
        for commit in reversed(commits):
            if commit.revision not in notes:
                continue
            if (content := await self._repo.get_note(commit.revision)) is None:
                continue
            try:
                note = Note.from_json(content)
            except InputException:
                continue
            if note.job_id == job_id:
                return JobStatus(
                    StatusString.SUCCEEDED,
                    result=JobResult(
                        revision=commit.revision, spec=note.spec, result=note.result
                    ),
                )
        raise UnknownJobError(job_id)

    async def sync_status(self, ref: str) -> list[str]:
        """Return revisions up to `ref` that are not yet synced, oldest first."""
        marker = await self._sync_state.get_revision()
        paths = self._repo.config.paths
        if not marker:
            commits = await self._repo.commits_before(ref, paths)
        else:
            commits = await self._repo.commits_between(marker, ref, paths)
        return [commit.revision for commit in commits]
