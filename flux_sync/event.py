"""Events reported about the progress of syncing and jobs.

Each sync cycle that covers new commits produces a `sync` event, followed by
an event for each release recorded in the notes of those commits. Jobs that
commit a change produce a `commit` event. Events are handed to an
`EventWriter`; the default one writes them to the log.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
import json
import logging
from typing import Any

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .git_repo import Commit
from .note import (
    Cause,
    UpdateSpec,
    WorkloadResult,
    changed_images,
)
from .resource import ResourceError, ResourceID

__all__ = [
    "EventType",
    "LogLevel",
    "Event",
    "SyncEventMetadata",
    "ReleaseEventMetadata",
    "AutoReleaseEventMetadata",
    "CommitEventMetadata",
    "ResourceErrorRecord",
    "EventWriter",
    "LoggingEventWriter",
    "short_revision",
]

_LOGGER = logging.getLogger(__name__)


class EventType(StrEnum):
    """Kinds of event, also used to summarise what a set of commits contains."""

    COMMIT = "commit"
    SYNC = "sync"
    RELEASE = "release"
    AUTORELEASE = "autorelease"
    UPDATE_POLICY = "update_policy"
    OTHER = "other"


class LogLevel(StrEnum):
    """Severity of an event."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def short_revision(revision: str) -> str:
    return revision[:7]


@dataclass
class _Metadata(DataClassDictMixin):
    class Config(BaseConfig):
        omit_default = True
        serialize_by_alias = True


@dataclass
class ResourceErrorRecord(_Metadata):
    """A resource level sync error as reported in an event."""

    id: str
    path: str
    error: str

    @classmethod
    def from_error(cls, err: ResourceError) -> "ResourceErrorRecord":
        return cls(
            id=str(err.resource_id) if err.resource_id else "",
            path=err.source,
            error=err.error,
        )


@dataclass
class SyncEventMetadata(_Metadata):
    """Details of a sync event.

    Commits are listed newest first.
    """

    commits: list[Commit] = field(default_factory=list)
    includes: dict[str, bool] = field(default_factory=dict)
    """Which kinds of event the synced commits contain."""
    errors: list[ResourceErrorRecord] = field(default_factory=list)
    initial_sync: bool = field(
        default=False, metadata=field_options(alias="initialSync")
    )


@dataclass
class ReleaseEventMetadata(_Metadata):
    """Details of a release made by a job."""

    revision: str
    spec: UpdateSpec
    cause: Cause = field(default_factory=Cause)
    result: dict[str, WorkloadResult] = field(default_factory=dict)
    error: str = ""


@dataclass
class AutoReleaseEventMetadata(_Metadata):
    """Details of an automated release."""

    revision: str
    spec: UpdateSpec
    result: dict[str, WorkloadResult] = field(default_factory=dict)
    error: str = ""


@dataclass
class CommitEventMetadata(_Metadata):
    """Details of a commit made by a job."""

    revision: str
    spec: UpdateSpec | None = None
    result: dict[str, WorkloadResult] = field(default_factory=dict)


EventMetadata = (
    SyncEventMetadata
    | ReleaseEventMetadata
    | AutoReleaseEventMetadata
    | CommitEventMetadata
)


@dataclass
class Event:
    """Something that happened that is worth reporting."""

    type: EventType
    started_at: datetime
    ended_at: datetime
    resource_ids: list[ResourceID] = field(default_factory=list)
    log_level: LogLevel = LogLevel.INFO
    message: str = ""
    metadata: EventMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation of the event."""
        data: dict[str, Any] = {
            "type": str(self.type),
            "resourceIDs": self._ids(),
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat(),
            "logLevel": str(self.log_level),
        }
        if self.message:
            data["message"] = self.message
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        return data

    def _ids(self) -> list[str]:
        return sorted(str(rid) for rid in self.resource_ids)

    def _sync_str(self, metadata: SyncEventMetadata) -> str:
        commits = metadata.commits
        if not commits:
            rev = "<no revision>"
        elif len(commits) <= 2:
            rev = short_revision(commits[0].revision)
        else:
            rev = (
                f"{short_revision(commits[-1].revision)}.."
                f"{short_revision(commits[0].revision)}"
            )
        return f"Sync: {rev}, {', '.join(self._ids()) or 'no workloads changed'}"

    def _release_str(self, metadata: ReleaseEventMetadata) -> str:
        images = changed_images(metadata.result) or ["no image changes"]
        ids = self._ids()
        if metadata.spec.all_workloads:
            ids = ["all workloads"]
        user = msg = ""
        if metadata.cause.user:
            user = f", by {metadata.cause.user}"
        if metadata.cause.message:
            msg = f", with message {json.dumps(metadata.cause.message)}"
        return (
            f"Released: {', '.join(images)} to "
            f"{', '.join(ids) or 'no workloads'}{user}{msg}"
        )

    def __str__(self) -> str:
        """Render a one line human readable summary."""
        if self.message:
            return self.message
        metadata = self.metadata
        if self.type == EventType.SYNC and isinstance(metadata, SyncEventMetadata):
            return self._sync_str(metadata)
        if self.type == EventType.RELEASE and isinstance(
            metadata, ReleaseEventMetadata
        ):
            return self._release_str(metadata)
        if self.type == EventType.AUTORELEASE and isinstance(
            metadata, AutoReleaseEventMetadata
        ):
            images = changed_images(metadata.result) or ["no image changes"]
            return f"Automated release of {', '.join(images)}"
        if self.type == EventType.COMMIT and isinstance(metadata, CommitEventMetadata):
            return (
                f"Commit: {short_revision(metadata.revision)}, "
                f"{', '.join(self._ids()) or '<no changes>'}"
            )
        if self.type == EventType.UPDATE_POLICY:
            return f"Updated policies: {', '.join(self._ids())}"
        return f"Unknown event: {self.type}"


class EventWriter(ABC):
    """Destination for events."""

    @abstractmethod
    async def log_event(self, event: Event) -> None:
        """Record an event, raising if it could not be delivered."""


class LoggingEventWriter(EventWriter):
    """Writes events to the log."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _LOGGER

    async def log_event(self, event: Event) -> None:
        self._logger.log(_LOGGING_LEVELS[event.log_level], "Event: %s", event)
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(
                "Event detail: %s", json.dumps(event.to_dict(), sort_keys=True)
            )
