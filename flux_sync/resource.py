"""Library for loading resource definitions from YAML.

Resources are identified by namespace, kind and name. A loaded resource
keeps the serialized document so it can be handed to the cluster without
further interpretation, along with the few fields the sync logic needs:
labels, `fluxcd.io/` policy annotations and owner references.
"""

import asyncio
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles
from aiofiles.ospath import exists, isdir
import yaml

from .exceptions import DuplicateResourceError, InputException
from .kinds import KindTable

__all__ = [
    "ResourceID",
    "Resource",
    "ResourceSet",
    "ResourceError",
    "LoadResult",
    "parse_documents",
    "load_files",
    "CLUSTER_SCOPE",
    "POLICY_PREFIX",
]

_LOGGER = logging.getLogger(__name__)

CLUSTER_SCOPE = "<cluster>"
DEFAULT_NAMESPACE = "default"
POLICY_PREFIX = "fluxcd.io/"
IGNORE_POLICY = "ignore"
LIST_KIND = "List"
YAML_SUFFIXES = (".yaml", ".yml")

ADDON_NAMESPACE = "kube-system"
ADDON_SERVICE_LABEL = "kubernetes.io/cluster-service"
ADDON_MODE_LABEL = "addonmanager.kubernetes.io/mode"
ADDON_MODES = ("EnsureExists", "Reconcile")


@dataclass(frozen=True, order=True)
class ResourceID:
    """Identifier for a resource, rendered as `namespace:kind/name`."""

    namespace: str
    kind: str
    name: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", self.kind.lower())
        if not self.namespace:
            object.__setattr__(self, "namespace", CLUSTER_SCOPE)

    def __str__(self) -> str:
        return f"{self.namespace}:{self.kind}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "ResourceID":
        """Parse a serialized resource id."""
        namespace, sep, rest = value.partition(":")
        kind, slash, name = rest.partition("/")
        if not sep or not slash or not namespace or not kind or not name:
            raise InputException(f"Invalid resource id '{value}'")
        return cls(namespace, kind, name)


@dataclass(frozen=True)
class Resource:
    """A single declared or observed resource."""

    id: ResourceID
    """Identity of the resource."""

    kind: str
    """The kind exactly as written in the document."""

    api_version: str

    source: str
    """Where the resource was read from, a file path or cluster description."""

    payload: bytes
    """The serialized document."""

    annotations: Mapping[str, str] = field(default_factory=dict)

    labels: Mapping[str, str] = field(default_factory=dict)

    owned: bool = False
    """True when the object carries owner references."""

    @property
    def policies(self) -> dict[str, str]:
        """Return the policy annotations with the reserved prefix removed."""
        return {
            key[len(POLICY_PREFIX) :]: value
            for key, value in self.annotations.items()
            if key.startswith(POLICY_PREFIX)
        }

    @property
    def ignored(self) -> bool:
        """Return true if the resource is marked to be left alone."""
        return self.policies.get(IGNORE_POLICY, "").lower() == "true"

    @property
    def is_addon(self) -> bool:
        """Return true if the resource is managed by the cluster addon manager."""
        if self.id.namespace != ADDON_NAMESPACE:
            return False
        if self.labels.get(ADDON_SERVICE_LABEL) == "true":
            return True
        return self.labels.get(ADDON_MODE_LABEL) in ADDON_MODES

    def identifying_payload(self) -> bytes:
        """Return a minimal document that identifies this object for deletion."""
        metadata: dict[str, str] = {"name": self.id.name}
        if self.id.namespace != CLUSTER_SCOPE:
            metadata["namespace"] = self.id.namespace
        doc = {"apiVersion": self.api_version, "kind": self.kind, "metadata": metadata}
        return yaml.safe_dump(doc, sort_keys=False).encode("utf-8")


@dataclass(frozen=True)
class ResourceError:
    """A failure attributed to a single resource or source file."""

    resource_id: ResourceID | None
    source: str
    error: str

    def __str__(self) -> str:
        if self.resource_id is None:
            return f"{self.source}: {self.error}"
        return f"{self.resource_id} ({self.source}): {self.error}"


class ResourceSet(Mapping[ResourceID, Resource]):
    """A collection of resources keyed by id."""

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        self._resources: dict[ResourceID, Resource] = {}
        for resource in resources:
            self.add(resource)

    def add(self, resource: Resource) -> None:
        """Add a resource, rejecting a second definition of the same id."""
        if (existing := self._resources.get(resource.id)) is not None:
            raise DuplicateResourceError(
                str(resource.id), existing.source, resource.source
            )
        self._resources[resource.id] = resource

    def __getitem__(self, key: ResourceID) -> Resource:
        return self._resources[key]

    def __iter__(self) -> Iterator[ResourceID]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return f"ResourceSet({sorted(str(rid) for rid in self._resources)})"


@dataclass
class LoadResult:
    """Resources that parsed and the errors for those that did not."""

    resources: ResourceSet = field(default_factory=ResourceSet)
    errors: list[ResourceError] = field(default_factory=list)

    def extend(self, other: "LoadResult") -> None:
        for resource in other.resources.values():
            self.resources.add(resource)
        self.errors.extend(other.errors)


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


def _make_resource(doc: dict[str, Any], source: str, kinds: KindTable) -> Resource:
    kind = doc.get("kind")
    if not kind or not isinstance(kind, str):
        raise InputException("document has no kind")
    api_version = doc.get("apiVersion")
    if not api_version or not isinstance(api_version, str):
        raise InputException(f"{kind} has no apiVersion")
    metadata = doc.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise InputException(f"{kind} has no metadata.name")
    if kinds.is_cluster_scoped(kind):
        namespace = CLUSTER_SCOPE
    else:
        namespace = metadata.get("namespace") or DEFAULT_NAMESPACE
    return Resource(
        id=ResourceID(namespace, kind, str(metadata["name"])),
        kind=kind,
        api_version=api_version,
        source=source,
        payload=yaml.safe_dump(doc, sort_keys=False).encode("utf-8"),
        annotations=_string_map(metadata.get("annotations")),
        labels=_string_map(metadata.get("labels")),
        owned=bool(metadata.get("ownerReferences")),
    )


def _expand(doc: Any) -> Iterator[Any]:
    if isinstance(doc, dict) and doc.get("kind") == LIST_KIND:
        yield from doc.get("items") or []
    else:
        yield doc


def parse_documents(data: bytes | str, source: str, kinds: KindTable) -> LoadResult:
    """Parse a multi-document YAML stream into resources.

    A document that cannot be understood becomes a `ResourceError` rather
    than aborting the whole stream. A syntax error stops parsing the rest of
    the stream since document boundaries can no longer be trusted.
    """
    result = LoadResult()
    try:
        for doc in yaml.safe_load_all(data):
            if doc is None:
                continue
            for item in _expand(doc):
                if not isinstance(item, dict):
                    result.errors.append(
                        ResourceError(None, source, "document is not a mapping")
                    )
                    continue
                try:
                    resource = _make_resource(item, source, kinds)
                except InputException as err:
                    result.errors.append(ResourceError(None, source, str(err)))
                    continue
                result.resources.add(resource)
    except yaml.YAMLError as err:
        _LOGGER.debug("Unable to parse %s: %s", source, err)
        result.errors.append(ResourceError(None, source, f"invalid YAML: {err}"))
    return result


def _find_yaml_files(root: Path) -> list[Path]:
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        found.extend(
            Path(dirpath) / name
            for name in sorted(filenames)
            if name.endswith(YAML_SUFFIXES)
        )
    return found


async def _read_file(path: Path) -> bytes:
    async with aiofiles.open(path, mode="rb") as infile:
        return await infile.read()


async def load_files(
    base: Path, paths: Iterable[str | Path], kinds: KindTable
) -> LoadResult:
    """Load every YAML document under `paths`, relative to `base`.

    Each path may name a directory (searched recursively) or a single file.
    Sources are recorded relative to `base`.
    """
    result = LoadResult()
    for path in paths:
        full_path = base / path
        if await isdir(full_path):
            files = await asyncio.to_thread(_find_yaml_files, full_path)
        elif await exists(full_path):
            files = [full_path]
        else:
            raise InputException(f"Path '{path}' does not exist in {base}")
        for file in files:
            source = str(file.relative_to(base))
            content = await _read_file(file)
            result.extend(parse_documents(content, source, kinds))
    return result
