"""A Kubernetes cluster reached through kubectl."""

import logging

from flux_sync.context import trace_context
from flux_sync.kinds import KindTable
from flux_sync.resource import ResourceSet

from .cluster import Cluster
from .kubectl import Kubectl

__all__ = [
    "KubernetesCluster",
]

_LOGGER = logging.getLogger(__name__)

LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"

# Types that are never declared in git and are noisy to export.
_SKIP_TYPES = frozenset(
    {
        "events",
        "events.events.k8s.io",
        "endpoints",
        "endpointslices.discovery.k8s.io",
        "leases.coordination.k8s.io",
        "componentstatuses",
    }
)


class KubernetesCluster(Cluster):
    """Cluster backed by kubectl.

    Only objects that were created with `kubectl apply` are reported as
    observed, so objects made by hand or by controllers are never garbage
    collected.
    """

    def __init__(self, kubectl: Kubectl, kinds: KindTable) -> None:
        super().__init__(kubectl, kinds)
        self.kubectl = kubectl

    async def export(self) -> bytes:
        with trace_context("Export"):
            types = [
                t for t in await self.kubectl.api_resources() if t not in _SKIP_TYPES
            ]
            _LOGGER.debug("Exporting %d resource types", len(types))
            return await self.kubectl.get_all(types)

    def parse_exported(self, data: bytes) -> ResourceSet:
        resources = super().parse_exported(data)
        return ResourceSet(
            r for r in resources.values() if LAST_APPLIED in r.annotations
        )

    def __str__(self) -> str:
        return str(self.kubectl)
