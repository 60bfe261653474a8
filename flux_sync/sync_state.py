"""Durable storage for the sync marker.

The sync marker records the revision that was most recently applied to the
cluster. It lives either in the upstream git repository as a tag, or in the
cluster as an annotation on a Secret (required when the repository is read
only). Both backends move the marker with a compare-and-swap so that two
daemons sharing a marker cannot move it backwards.
"""

from abc import ABC, abstractmethod
from enum import StrEnum
import logging
from typing import Any

from .cluster.kubectl import Kubectl
from .exceptions import ConflictException, InputException
from .git_repo import GitRepo

__all__ = [
    "MarkerUpdate",
    "SyncState",
    "GitTagSyncState",
    "SecretSyncState",
    "SYNC_MARKER_ANNOTATION",
]

_LOGGER = logging.getLogger(__name__)

SYNC_MARKER_ANNOTATION = "fluxcd.io/sync-hwm"


class MarkerUpdate(StrEnum):
    """Outcome of trying to move the sync marker."""

    MOVED = "moved"
    LOST_RACE = "lost-race"
    """The marker was not where it was expected to be, and was not moved."""

    UNCHANGED = "unchanged"
    """The marker already pointed at the revision."""


class SyncState(ABC):
    """Reads and moves the sync marker.

    Errors other than losing a race are raised.
    """

    @abstractmethod
    async def get_revision(self) -> str:
        """Return the revision of the marker, or empty if never synced."""

    @abstractmethod
    async def update_marker(self, expected: str, revision: str) -> MarkerUpdate:
        """Move the marker from `expected` to `revision`."""

    @abstractmethod
    async def delete_marker(self) -> None:
        """Remove the marker so the next sync is treated as the first."""


class GitTagSyncState(SyncState):
    """Sync marker stored as an annotated tag in the upstream repository."""

    def __init__(self, repo: GitRepo, tag: str | None = None) -> None:
        self._repo = repo
        self._tag = tag or repo.config.sync_tag

    async def get_revision(self) -> str:
        if (current := await self._repo.remote_tag(self._tag)) is None:
            return ""
        return current[1]

    async def update_marker(self, expected: str, revision: str) -> MarkerUpdate:
        async with self._repo.clone(revision) as checkout:
            if await checkout.move_tag_and_push(self._tag, expected, revision):
                _LOGGER.debug("Moved tag %s to %s", self._tag, revision)
                return MarkerUpdate.MOVED
        return MarkerUpdate.LOST_RACE

    async def delete_marker(self) -> None:
        await self._repo.delete_tag(self._tag)

    def __str__(self) -> str:
        return f"tag '{self._tag}' in {self._repo.config.url}"


class SecretSyncState(SyncState):
    """Sync marker stored as an annotation on a Secret in the cluster.

    The Secret is only ever patched, since it may hold other data such as
    the deploy key. A missing annotation is treated as never synced and is
    initialised to an empty value.
    """

    KIND = "secret"

    def __init__(self, kubectl: Kubectl, namespace: str, name: str) -> None:
        self._kubectl = kubectl
        self._namespace = namespace
        self._name = name

    async def _get(self) -> tuple[str | None, str]:
        secret = await self._kubectl.get_json(self.KIND, self._namespace, self._name)
        if secret is None:
            raise InputException(f"Secret {self._namespace}/{self._name} not found")
        metadata: dict[str, Any] = secret.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        return annotations.get(SYNC_MARKER_ANNOTATION), metadata.get(
            "resourceVersion", ""
        )

    async def _patch(self, value: str | None, resource_version: str = "") -> None:
        metadata: dict[str, Any] = {"annotations": {SYNC_MARKER_ANNOTATION: value}}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        await self._kubectl.merge_patch(
            self.KIND, self._namespace, self._name, {"metadata": metadata}
        )

    async def get_revision(self) -> str:
        value, _ = await self._get()
        if value is None:
            _LOGGER.info("Initialising sync marker on %s", self)
            await self._patch("")
            return ""
        return value

    async def update_marker(self, expected: str, revision: str) -> MarkerUpdate:
        value, resource_version = await self._get()
        if (value or "") != expected:
            _LOGGER.info("Marker on %s is %r, expected %r", self, value, expected)
            return MarkerUpdate.LOST_RACE
        try:
            await self._patch(revision, resource_version)
        except ConflictException as err:
            _LOGGER.info("Marker on %s was updated concurrently: %s", self, err)
            return MarkerUpdate.LOST_RACE
        return MarkerUpdate.MOVED

    async def delete_marker(self) -> None:
        await self._patch(None)

    def __str__(self) -> str:
        return f"secret {self._namespace}/{self._name}"
