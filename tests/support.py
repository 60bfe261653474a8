"""Fakes and helpers shared by the tests."""

import asyncio
from collections.abc import Callable
from pathlib import Path

import git
import yaml

from flux_sync.cluster.cluster import Cluster, Transport
from flux_sync.config import GitConfig
from flux_sync.event import Event, EventWriter
from flux_sync.exceptions import ApplyException, FluxSyncException, TransportException
from flux_sync.kinds import KindTable
from flux_sync.resource import ResourceSet, parse_documents
from flux_sync.sync_state import MarkerUpdate, SyncState


def manifest(
    kind: str,
    name: str,
    namespace: str | None = "default",
    api_version: str = "v1",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> str:
    """Return a minimal YAML document for a resource."""
    metadata: dict[str, object] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = labels
    if annotations:
        metadata["annotations"] = annotations
    return yaml.safe_dump(
        {"apiVersion": api_version, "kind": kind, "metadata": metadata},
        sort_keys=False,
    )


def names_in(payload: bytes) -> list[str]:
    """Return the names of the documents in a multi-document payload."""
    return [
        doc["metadata"]["name"] for doc in yaml.safe_load_all(payload) if doc
    ]


class FakeTransport(Transport):
    """Records what is sent and fails for configured resource names."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []
        self.failing: set[str] = set()
        self.unreachable = False

    async def _send(self, verb: str, payload: bytes) -> None:
        if self.unreachable:
            raise TransportException("Unable to connect to the server")
        names = names_in(payload)
        self.calls.append((verb, names))
        if bad := sorted(self.failing.intersection(names)):
            raise ApplyException(f"rejected: {', '.join(bad)}")

    async def apply(self, payload: bytes) -> None:
        await self._send("apply", payload)

    async def delete(self, payload: bytes) -> None:
        await self._send("delete", payload)


class FakeCluster(Cluster):
    """A cluster whose exported objects are set directly by the test."""

    def __init__(self, transport: FakeTransport, kinds: KindTable) -> None:
        super().__init__(transport, kinds)
        self.exported: list[str] = []

    async def export(self) -> bytes:
        return "---\n".join(self.exported).encode("utf-8")


class FakeSyncState(SyncState):
    """Keeps the marker in memory."""

    def __init__(self, revision: str = "") -> None:
        self.revision = revision
        self.updates: list[tuple[str, str]] = []

    async def get_revision(self) -> str:
        return self.revision

    async def update_marker(self, expected: str, revision: str) -> MarkerUpdate:
        self.updates.append((expected, revision))
        if self.revision != expected:
            return MarkerUpdate.LOST_RACE
        self.revision = revision
        return MarkerUpdate.MOVED

    async def delete_marker(self) -> None:
        self.revision = ""


class Upstream:
    """A bare upstream repository and a clone used to author commits."""

    def __init__(self, root: Path) -> None:
        self.url = str(root / "upstream.git")
        git.Repo.init(self.url, bare=True, initial_branch="main")
        self.work = root / "author"
        self.repo = git.Repo.init(self.work, initial_branch="main")
        with self.repo.config_writer() as writer:
            writer.set_value("user", "name", "Test Author")
            writer.set_value("user", "email", "author@example.com")
        self.repo.create_remote("origin", self.url)

    def commit(self, files: dict[str, str | None], message: str = "Update") -> str:
        """Write (or delete, for None) files, then commit and push."""
        for name, content in files.items():
            path = self.work / name
            if content is None:
                path.unlink()
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        self.repo.git.add("--all")
        self.repo.git.commit("-m", message)
        self.repo.git.push("origin", "main")
        return self.repo.head.commit.hexsha

    def pull(self) -> None:
        self.repo.git.pull("origin", "main")

    def config(self, **kwargs: object) -> GitConfig:
        return GitConfig(
            url=self.url,
            branch="main",
            user="Flux Test",
            email="flux@example.com",
            **kwargs,  # type: ignore[arg-type]
        )


def resource_set(kinds: KindTable, *docs: str) -> ResourceSet:
    """Parse documents into a resource set, failing on any error."""
    result = parse_documents("---\n".join(docs), "test", kinds)
    assert not result.errors
    return result.resources


def add_note(upstream: Upstream, revision: str, content: str) -> None:
    """Attach a note to an upstream commit, as a job in another daemon would."""
    upstream.repo.git.notes("--ref", "flux", "add", "-m", content, revision)
    upstream.repo.git.push("origin", "refs/notes/flux:refs/notes/flux")


class RecordingEventWriter(EventWriter):
    """Keeps events in memory, optionally failing to deliver them."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self.broken = False

    async def log_event(self, event: Event) -> None:
        if self.broken:
            raise FluxSyncException("Event upstream unavailable")
        self.events.append(event)


async def wait_for(predicate: Callable[[], bool], timeout: float = 20.0) -> None:
    """Wait until `predicate` returns true."""

    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.05)

    await asyncio.wait_for(poll(), timeout)
