"""Table of per-kind behavior used when loading and applying resources.

The table is built once at startup and handed to the components that need
it. It answers two questions about a kind: where it falls in the apply
order, and whether objects of that kind live outside any namespace.
"""

from collections.abc import Iterable
from dataclasses import dataclass

__all__ = [
    "KindSpec",
    "KindTable",
    "default_kind_table",
    "DEFAULT_RANK",
]

DEFAULT_RANK = 4

# Kinds that must exist before anything that references them is applied.
_RANKED_KINDS: dict[int, tuple[str, ...]] = {
    0: ("Namespace",),
    1: (
        "CustomResourceDefinition",
        "ServiceAccount",
        "ClusterRole",
        "Role",
        "PersistentVolume",
        "Service",
    ),
    2: (
        "ResourceQuota",
        "LimitRange",
        "Secret",
        "ConfigMap",
        "RoleBinding",
        "ClusterRoleBinding",
        "PersistentVolumeClaim",
        "Ingress",
    ),
    3: (
        "DaemonSet",
        "Deployment",
        "ReplicationController",
        "ReplicaSet",
        "Job",
        "CronJob",
        "StatefulSet",
    ),
}

_CLUSTER_SCOPED_KINDS = (
    "Namespace",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "PersistentVolume",
    "StorageClass",
    "PriorityClass",
    "Node",
    "APIService",
    "MutatingWebhookConfiguration",
    "ValidatingWebhookConfiguration",
)


@dataclass(frozen=True)
class KindSpec:
    """Behavior of a single resource kind."""

    kind: str
    rank: int = DEFAULT_RANK
    cluster_scoped: bool = False


class KindTable:
    """Closed lookup of kind behavior.

    Kinds that are not in the table are namespaced and applied last.
    """

    def __init__(self, specs: Iterable[KindSpec]) -> None:
        self._specs = {spec.kind.lower(): spec for spec in specs}

    def get(self, kind: str) -> KindSpec:
        """Return the behavior of `kind`, matched case insensitively."""
        if (spec := self._specs.get(kind.lower())) is not None:
            return spec
        return KindSpec(kind=kind)

    def rank(self, kind: str) -> int:
        return self.get(kind).rank

    def is_cluster_scoped(self, kind: str) -> bool:
        return self.get(kind).cluster_scoped

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, str) and kind.lower() in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def default_kind_table() -> KindTable:
    """Build the table of core Kubernetes kinds."""
    ranks = {kind: rank for rank, kinds in _RANKED_KINDS.items() for kind in kinds}
    names = list(ranks) + [k for k in _CLUSTER_SCOPED_KINDS if k not in ranks]
    return KindTable(
        KindSpec(
            kind=kind,
            rank=ranks.get(kind, DEFAULT_RANK),
            cluster_scoped=kind in _CLUSTER_SCOPED_KINDS,
        )
        for kind in names
    )
