"""Notes attached to commits made by jobs.

When a job commits a change to the repository it attaches a JSON note to the
commit, under `GitConfig.notes_ref`, recording the job id, what was asked for
and what happened to each workload. Sync cycles read the notes back to report
releases, and job status lookups use them once the in-memory status of a job
has been evicted.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import json
from typing import Any

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue

from .exceptions import InputException
from .resource import ResourceID

__all__ = [
    "UpdateType",
    "WorkloadStatus",
    "Cause",
    "ContainerUpdate",
    "WorkloadResult",
    "UpdateSpec",
    "Note",
    "affected_resources",
    "changed_images",
    "result_error",
]

ALL_WORKLOADS = "<all>"


class UpdateType(StrEnum):
    """The kind of change a job makes."""

    IMAGES = "image"
    CONTAINERS = "containers"
    AUTO = "auto"
    POLICY = "policy"
    SYNC = "sync"


class WorkloadStatus(StrEnum):
    """Outcome of an update for one workload."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    UNKNOWN = "unknown"


@dataclass
class _Record(DataClassDictMixin):
    class Config(BaseConfig):
        omit_default = True
        serialize_by_alias = True


@dataclass
class Cause(_Record):
    """Who asked for a change and why."""

    user: str = ""
    message: str = ""


@dataclass
class ContainerUpdate(_Record):
    """An image change for a single container."""

    container: str
    current: str
    target: str


@dataclass
class WorkloadResult(_Record):
    """What happened to one workload."""

    status: WorkloadStatus
    error: str = ""
    per_container: list[ContainerUpdate] = field(
        default_factory=list, metadata=field_options(alias="perContainer")
    )


@dataclass
class UpdateSpec(_Record):
    """A requested change.

    `type` selects how `spec` is interpreted. Types that are not known are
    kept as is so notes from newer versions can still be read.
    """

    type: str
    cause: Cause = field(default_factory=Cause)
    spec: dict[str, Any] = field(default_factory=dict)

    @property
    def update_type(self) -> UpdateType | None:
        try:
            return UpdateType(self.type)
        except ValueError:
            return None

    @property
    def all_workloads(self) -> bool:
        """Return true for an image release that targets every workload."""
        return self.update_type == UpdateType.IMAGES and ALL_WORKLOADS in (
            self.spec.get("serviceSpecs") or []
        )


@dataclass
class Note(_Record):
    """The note attached to a commit made by a job."""

    job_id: str = field(metadata=field_options(alias="jobID"))
    spec: UpdateSpec
    result: dict[str, WorkloadResult] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, content: str) -> "Note":
        """Parse a note, raising `InputException` if it is malformed."""
        try:
            note = cls.from_dict(json.loads(content))
            for rid in note.result:
                ResourceID.parse(rid)
        except (
            ValueError,
            TypeError,
            AttributeError,
            MissingField,
            InvalidFieldValue,
            InputException,
        ) as err:
            raise InputException(f"Invalid note: {err}") from err
        return note


def affected_resources(result: dict[str, WorkloadResult]) -> list[ResourceID]:
    """Return the workloads that were successfully updated."""
    return sorted(
        ResourceID.parse(rid)
        for rid, workload in result.items()
        if workload.status == WorkloadStatus.SUCCESS
    )


def changed_images(result: dict[str, WorkloadResult]) -> list[str]:
    """Return the images that were released, without duplicates."""
    images = {
        update.target
        for workload in result.values()
        if workload.status == WorkloadStatus.SUCCESS
        for update in workload.per_container
    }
    return sorted(images)


def result_error(result: dict[str, WorkloadResult]) -> str:
    """Return a summary of the workloads that failed, or empty."""
    errors = [
        f"{rid}: {workload.error}"
        for rid, workload in sorted(result.items())
        if workload.status == WorkloadStatus.FAILED
    ]
    return "; ".join(errors)
