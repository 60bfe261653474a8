"""A single sync cycle.

A cycle works out which commits are new since the sync marker, applies the
whole of the declared state at the branch head to the cluster, reports what
changed, and finally moves the marker. Any failure before the marker is
moved aborts the cycle and leaves the marker where it was, so the same
commits are covered by the next attempt.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from flux_sync.cluster.apply import ApplyEngine
from flux_sync.cluster.cluster import Cluster
from flux_sync.cluster.sync import Verb, plan_sync
from flux_sync.context import TraceCollector, trace_context
from flux_sync.event import (
    AutoReleaseEventMetadata,
    Event,
    EventType,
    EventWriter,
    ReleaseEventMetadata,
    ResourceErrorRecord,
    SyncEventMetadata,
)
from flux_sync.exceptions import InputException
from flux_sync.git_repo import Checkout, Commit, GitRepo
from flux_sync.note import (
    Note,
    UpdateType,
    affected_resources,
    result_error,
)
from flux_sync.resource import (
    YAML_SUFFIXES,
    ResourceError,
    ResourceID,
    ResourceSet,
    load_files,
)
from flux_sync.sync_state import MarkerUpdate

from .ratchet import SyncRatchet

__all__ = [
    "ChangeSet",
    "SyncResult",
    "Syncer",
]

_LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChangeSet:
    """The commits a cycle covers.

    Commits are oldest first.
    """

    old_revision: str
    new_revision: str
    commits: list[Commit] = field(default_factory=list)
    initial_sync: bool = False


@dataclass
class SyncResult:
    """What a cycle did, mostly for tests and logging."""

    change_set: ChangeSet
    changed: list[ResourceID] = field(default_factory=list)
    errors: list[ResourceError] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    marker: MarkerUpdate | None = None


class Syncer:
    """Runs sync cycles against one repository and cluster."""

    def __init__(
        self,
        repo: GitRepo,
        cluster: Cluster,
        engine: ApplyEngine,
        ratchet: SyncRatchet,
        events: EventWriter,
    ) -> None:
        self._repo = repo
        self._cluster = cluster
        self._engine = engine
        self._ratchet = ratchet
        self._events = events

    @property
    def ratchet(self) -> SyncRatchet:
        return self._ratchet

    async def get_change_set(self, head: str) -> ChangeSet:
        """Work out the commits between the sync marker and `head`."""
        paths = self._repo.config.paths
        old = await self._ratchet.current()
        if not old:
            commits = await self._repo.commits_before(head, paths)
            return ChangeSet(old, head, commits, initial_sync=True)
        commits = await self._repo.commits_between(old, head, paths)
        return ChangeSet(old, head, commits)

    async def apply(
        self, checkout: Checkout
    ) -> tuple[ResourceSet, list[ResourceError]]:
        """Apply everything declared in the checkout to the cluster.

        Returns the declared resources and the resource level errors from
        both loading and applying.
        """
        loaded = await self._cluster.load_declared(
            checkout.dir, checkout.manifest_dirs()
        )
        for error in loaded.errors:
            _LOGGER.warning("Unable to load resource: %s", error)
        observed = await self._cluster.observed()
        sync_def = plan_sync(loaded.resources, observed)
        _LOGGER.info(
            "Applying %d and deleting %d resources",
            len(sync_def.of(Verb.APPLY)),
            len(sync_def.of(Verb.DELETE)),
        )
        errors = loaded.errors + await self._engine.sync(sync_def)
        return loaded.resources, errors

    async def changed_resources(
        self,
        checkout: Checkout,
        change_set: ChangeSet,
        declared: ResourceSet,
        errors: list[ResourceError],
    ) -> list[ResourceID]:
        """Return the resources that the commits in the change set touched.

        On an initial sync that is everything declared. Resources that failed
        to sync are left out.
        """
        ids: set[ResourceID] = set(declared)
        if not change_set.initial_sync:
            changed_files = [
                path
                for path in await checkout.changed_files(change_set.old_revision)
                if path.endswith(YAML_SUFFIXES)
            ]
            if changed_files:
                loaded = await load_files(
                    checkout.dir, changed_files, self._cluster.kinds
                )
                ids = set(loaded.resources)
        failed = {err.resource_id for err in errors if err.resource_id}
        return sorted(ids - failed)

    async def collect_note_events(
        self, change_set: ChangeSet, started: datetime
    ) -> tuple[list[Event], dict[str, bool]]:
        """Turn the notes on the new commits into events.

        Also returns which kinds of event the commits contain. Commits are
        visited newest first. Notes are not expected on an initial sync, and
        if one is found the rest are not read since they most likely belong to
        another daemon sharing the repository.
        """
        events: list[Event] = []
        includes: dict[str, bool] = {}
        if not change_set.commits:
            return events, includes
        notes = await self._repo.note_rev_list()
        for commit in reversed(change_set.commits):
            if commit.revision not in notes:
                includes[EventType.OTHER] = True
                continue
            content = await self._repo.get_note(commit.revision)
            if content is None:
                includes[EventType.OTHER] = True
                continue
            if change_set.initial_sync:
                _LOGGER.warning(
                    "No notes expected on initial sync; this repository may be "
                    "in use by another daemon"
                )
                return events, includes
            try:
                note = Note.from_json(content)
            except InputException as err:
                _LOGGER.warning("Ignoring note on %s: %s", commit.revision, err)
                includes[EventType.OTHER] = True
                continue
            if event := self._note_event(commit, note, started):
                events.append(event)
                includes[event.type] = True
            elif note.spec.update_type == UpdateType.POLICY:
                includes[EventType.UPDATE_POLICY] = True
            else:
                includes[EventType.OTHER] = True
        return events, includes

    def _note_event(
        self, commit: Commit, note: Note, started: datetime
    ) -> Event | None:
        update_type = note.spec.update_type
        ids = affected_resources(note.result)
        if update_type in (UpdateType.IMAGES, UpdateType.CONTAINERS):
            return Event(
                type=EventType.RELEASE,
                started_at=started,
                ended_at=_now(),
                resource_ids=ids,
                metadata=ReleaseEventMetadata(
                    revision=commit.revision,
                    spec=note.spec,
                    cause=note.spec.cause,
                    result=note.result,
                    error=result_error(note.result),
                ),
            )
        if update_type == UpdateType.AUTO:
            return Event(
                type=EventType.AUTORELEASE,
                started_at=started,
                ended_at=_now(),
                resource_ids=ids,
                metadata=AutoReleaseEventMetadata(
                    revision=commit.revision,
                    spec=note.spec,
                    result=note.result,
                    error=result_error(note.result),
                ),
            )
        return None

    async def log_sync_event(
        self,
        change_set: ChangeSet,
        changed: list[ResourceID],
        started: datetime,
        includes: dict[str, bool],
        errors: list[ResourceError],
    ) -> Event | None:
        """Report the synced commits, if there were any."""
        if not change_set.commits:
            return None
        event = Event(
            type=EventType.SYNC,
            started_at=started,
            ended_at=started,
            resource_ids=changed,
            metadata=SyncEventMetadata(
                commits=list(reversed(change_set.commits)),
                includes=includes,
                errors=[ResourceErrorRecord.from_error(err) for err in errors],
                initial_sync=change_set.initial_sync,
            ),
        )
        await self._events.log_event(event)
        return event

    async def sync(self, head: str, started: datetime | None = None) -> SyncResult:
        """Run one sync cycle up to the revision `head`."""
        timings = TraceCollector()
        with timings.activate():
            result = await self._sync(head, started or _now())
        _LOGGER.debug(
            "Sync timings: %s",
            ", ".join(f"{k}={v:0.2f}s" for k, v in timings.timings.items()),
        )
        return result

    async def _sync(self, head: str, started: datetime) -> SyncResult:
        with trace_context("Sync"):
            change_set = await self.get_change_set(head)
            _LOGGER.info(
                "Syncing %s..%s (%d commits)",
                change_set.old_revision or "<initial>",
                change_set.new_revision,
                len(change_set.commits),
            )
            result = SyncResult(change_set)
            async with self._repo.clone(head) as checkout:
                declared, result.errors = await self.apply(checkout)
                result.changed = await self.changed_resources(
                    checkout, change_set, declared, result.errors
                )
            note_events, includes = await self.collect_note_events(
                change_set, started
            )
            if event := await self.log_sync_event(
                change_set, result.changed, started, includes, result.errors
            ):
                result.events.append(event)
            for note_event in note_events:
                await self._events.log_event(note_event)
                result.events.append(note_event)
            result.marker = await self._ratchet.update(
                change_set.old_revision, change_set.new_revision
            )
            if result.marker == MarkerUpdate.LOST_RACE:
                _LOGGER.info("Sync marker moved by another writer, not refreshing")
                return result
            await self._repo.refresh()
        return result
