"""Applying a sync definition to a cluster in dependency order.

Resources are sent in rank order (see `flux_sync.kinds`) so that, for
example, a Namespace exists before anything placed in it. Deletes run first
and in exactly the reverse order.

Each direction is attempted as one multi-document operation. When that
fails, every resource in it is retried on its own so a single bad resource
cannot block the rest. Resources that failed in the previous cycle skip the
batch and go straight to being sent individually.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
import logging

from flux_sync.context import trace_context
from flux_sync.exceptions import ApplyException
from flux_sync.kinds import KindTable
from flux_sync.resource import Resource, ResourceError, ResourceID

from .cluster import Transport
from .sync import SyncDef, Verb

__all__ = [
    "ApplyEngine",
    "BatchStrategy",
    "BatchPlan",
    "make_multidoc",
    "apply_order",
]

_LOGGER = logging.getLogger(__name__)


def make_multidoc(resources: Iterable[Resource], verb: Verb = Verb.APPLY) -> bytes:
    """Join resources into a single multi-document YAML stream."""
    parts: list[bytes] = []
    for resource in resources:
        parts.append(b"\n---\n")
        if verb == Verb.DELETE:
            parts.append(resource.identifying_payload())
        else:
            parts.append(resource.payload)
    return b"".join(parts)


def apply_order(resources: Iterable[Resource], kinds: KindTable) -> list[Resource]:
    """Sort resources by kind rank, then by name."""
    return sorted(
        resources,
        key=lambda r: (kinds.rank(r.kind), r.id.name, str(r.id)),
    )


@dataclass
class BatchPlan:
    """Resources split into those sent together and those sent one by one."""

    batch: list[Resource] = field(default_factory=list)
    singles: list[Resource] = field(default_factory=list)


class BatchStrategy:
    """Sends one direction of a sync, isolating failing resources.

    The steps are exposed separately so each can be exercised on its own:
    `plan`, `attempt_batch`, `replan` and `attempt_singles`. `run` performs
    all of them in order.
    """

    def __init__(
        self, transport: Transport, verb: Verb, errored: set[ResourceID]
    ) -> None:
        self._transport = transport
        self._verb = verb
        self._errored = errored

    def plan(self, resources: list[Resource]) -> BatchPlan:
        """Send previously failing resources individually, the rest together."""
        plan = BatchPlan()
        for resource in resources:
            if resource.id in self._errored:
                plan.singles.append(resource)
            else:
                plan.batch.append(resource)
        return plan

    async def _send(self, payload: bytes) -> None:
        if self._verb == Verb.DELETE:
            await self._transport.delete(payload)
        else:
            await self._transport.apply(payload)

    async def attempt_batch(self, plan: BatchPlan) -> bool:
        """Send the batch as one operation, returning true on success."""
        if not plan.batch:
            return True
        try:
            await self._send(make_multidoc(plan.batch, self._verb))
        except ApplyException as err:
            _LOGGER.info(
                "%s of %d resources failed, retrying individually: %s",
                self._verb,
                len(plan.batch),
                err,
            )
            return False
        return True

    def replan(self, plan: BatchPlan) -> BatchPlan:
        """Move every batched resource to the singles after a failed batch."""
        return BatchPlan(batch=[], singles=plan.singles + plan.batch)

    async def attempt_singles(self, plan: BatchPlan) -> list[ResourceError]:
        """Send each single resource, collecting an error for each failure."""
        errors: list[ResourceError] = []
        for resource in plan.singles:
            try:
                await self._send(make_multidoc([resource], self._verb))
            except ApplyException as err:
                _LOGGER.warning("%s %s failed: %s", self._verb, resource.id, err)
                errors.append(ResourceError(resource.id, resource.source, str(err)))
        return errors

    async def run(self, resources: list[Resource]) -> list[ResourceError]:
        """Send all resources, returning the errors for those that failed.

        A `TransportException` is not caught and ends the run.
        """
        if not resources:
            return []
        _LOGGER.debug("Running %s on %d resources", self._verb, len(resources))
        plan = self.plan(resources)
        if not await self.attempt_batch(plan):
            plan = self.replan(plan)
        return await self.attempt_singles(plan)


class ApplyEngine:
    """Applies sync definitions and remembers which resources failed."""

    def __init__(self, transport: Transport, kinds: KindTable) -> None:
        self._transport = transport
        self._kinds = kinds
        self._errored: set[ResourceID] = set()

    @property
    def errored(self) -> frozenset[ResourceID]:
        """Resources that failed in the most recent cycle."""
        return frozenset(self._errored)

    async def sync(self, sync_def: SyncDef) -> list[ResourceError]:
        """Apply the sync definition, returning resource level errors.

        The set of failed resources carried into the next cycle is replaced
        by the failures of this one.
        """
        errors: list[ResourceError] = []
        with trace_context("Apply"):
            deletes = apply_order(sync_def.of(Verb.DELETE), self._kinds)
            deletes.reverse()
            errors.extend(
                await BatchStrategy(self._transport, Verb.DELETE, self._errored).run(
                    deletes
                )
            )
            applies = apply_order(sync_def.of(Verb.APPLY), self._kinds)
            errors.extend(
                await BatchStrategy(self._transport, Verb.APPLY, self._errored).run(
                    applies
                )
            )
        self._errored = {err.resource_id for err in errors if err.resource_id}
        return errors

