"""Interfaces to a cluster that resources are synced to."""

from abc import ABC, abstractmethod
from collections.abc import Iterable
import logging
from pathlib import Path

from flux_sync.kinds import KindTable
from flux_sync.resource import LoadResult, ResourceSet, load_files, parse_documents

__all__ = [
    "Transport",
    "Cluster",
]

_LOGGER = logging.getLogger(__name__)


class Transport(ABC):
    """Sends resource documents to the cluster.

    Implementations raise `ApplyException` when the cluster rejects the
    documents and `TransportException` when the cluster cannot be reached.
    """

    @abstractmethod
    async def apply(self, payload: bytes) -> None:
        """Create or update the objects in the multi-document payload."""

    @abstractmethod
    async def delete(self, payload: bytes) -> None:
        """Delete the objects in the multi-document payload."""


class Cluster(ABC):
    """A cluster holding observed resources."""

    def __init__(self, transport: Transport, kinds: KindTable) -> None:
        self.transport = transport
        self.kinds = kinds

    async def load_declared(
        self, base: Path, paths: Iterable[str | Path]
    ) -> LoadResult:
        """Load the resources declared under `paths` of a checkout."""
        return await load_files(base, list(paths) or ["."], self.kinds)

    @abstractmethod
    async def export(self) -> bytes:
        """Return every object in the cluster as a YAML stream."""

    def parse_exported(self, data: bytes) -> ResourceSet:
        """Parse exported objects, keeping those that sync is responsible for.

        Objects that are owned by another object are created by a controller
        and are never considered for sync.
        """
        result = parse_documents(data, str(self), self.kinds)
        for error in result.errors:
            _LOGGER.warning("Ignoring unreadable exported object: %s", error)
        return ResourceSet(r for r in result.resources.values() if not r.owned)

    async def observed(self) -> ResourceSet:
        """Export and parse the objects currently in the cluster."""
        return self.parse_exported(await self.export())
