"""Exceptions related to flux-sync."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .resource import ResourceError

__all__ = [
    "FluxSyncException",
    "InputException",
    "DuplicateResourceError",
    "CommandException",
    "GitException",
    "KubectlException",
    "TransportException",
    "ApplyException",
    "ConflictException",
    "SyncError",
    "UnknownJobError",
]


class FluxSyncException(Exception):
    """Generic base exception used for this library."""


class InputException(FluxSyncException):
    """Raised when the input files or values are not formatted as expected."""


class DuplicateResourceError(InputException):
    """Raised when the same resource is declared in more than one document."""

    def __init__(self, resource_id: str, first: str, second: str) -> None:
        super().__init__(
            f"Duplicate definition of '{resource_id}' (in {first} and {second})"
        )
        self.resource_id = resource_id
        self.sources = (first, second)


class CommandException(FluxSyncException):
    """Raised when there is a failure running a subcommand."""


class GitException(CommandException):
    """Raised when there is a failure running a git command."""


class KubectlException(CommandException):
    """Raised when there is a failure running a kubectl command."""


class TransportException(KubectlException):
    """Raised when the cluster cannot be reached at all.

    This is fatal to a sync cycle, unlike a failure to apply a single
    resource.
    """


class ApplyException(KubectlException):
    """Raised when the cluster rejects one or more resources."""


class SyncError(FluxSyncException):
    """Aggregate of resource level errors from a sync cycle.

    This is a normal outcome of a cycle: everything that could be applied
    was applied and the failures are listed in `errors`.
    """

    def __init__(self, errors: list["ResourceError"]) -> None:
        self.errors = errors
        lines = [f"{len(errors)} resource(s) failed to sync"]
        lines.extend(f"  {err}" for err in errors)
        super().__init__("\n".join(lines))


class UnknownJobError(FluxSyncException):
    """Raised when the status of a job cannot be determined."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Unknown job '{job_id}'")
        self.job_id = job_id


class ConflictException(ApplyException):
    """Raised when an update is rejected because the object changed underneath it."""
