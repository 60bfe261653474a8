"""Planning what to change in a cluster so it matches the declared resources.

The plan is a full set difference recomputed on every cycle: every declared
resource is applied, so drift in the cluster is corrected even when nothing
changed in git, and every observed resource that is no longer declared is
deleted. Resources owned by the cluster addon manager, and resources that
carry the `fluxcd.io/ignore` policy on either side, are left alone.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging

from flux_sync.resource import Resource, ResourceSet

__all__ = [
    "Verb",
    "SyncAction",
    "SyncDef",
    "plan_sync",
]

_LOGGER = logging.getLogger(__name__)


class Verb(StrEnum):
    """Operation to perform on a resource."""

    APPLY = "apply"
    DELETE = "delete"


@dataclass(frozen=True)
class SyncAction:
    """A single operation on a resource."""

    verb: Verb
    resource: Resource

    def __str__(self) -> str:
        return f"{self.verb} {self.resource.id}"


@dataclass
class SyncDef:
    """The operations for one sync cycle."""

    actions: list[SyncAction] = field(default_factory=list)

    def of(self, verb: Verb) -> list[Resource]:
        """Return the resources with the given verb."""
        return [action.resource for action in self.actions if action.verb == verb]

    def __len__(self) -> int:
        return len(self.actions)


def _skip(resource: Resource, where: str) -> bool:
    if resource.is_addon:
        _LOGGER.debug("Skipping addon %s (%s)", resource.id, where)
        return True
    if resource.ignored:
        _LOGGER.info("Not syncing %s, marked ignore in %s", resource.id, where)
        return True
    return False


def plan_sync(declared: ResourceSet, observed: ResourceSet) -> SyncDef:
    """Compute the actions that make `observed` match `declared`."""
    sync_def = SyncDef()
    for rid, resource in observed.items():
        if rid in declared:
            continue
        if _skip(resource, "cluster"):
            continue
        sync_def.actions.append(SyncAction(Verb.DELETE, resource))
    for rid, resource in declared.items():
        if _skip(resource, "git"):
            continue
        if (existing := observed.get(rid)) is not None and existing.ignored:
            _LOGGER.info("Not syncing %s, marked ignore in cluster", rid)
            continue
        sync_def.actions.append(SyncAction(Verb.APPLY, resource))
    return sync_def
