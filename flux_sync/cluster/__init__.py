"""Reconciling resources in a cluster with the resources declared in git.

`sync.plan_sync` computes what to do, `apply.ApplyEngine` does it in a safe
order through a `cluster.Transport`, and `kubernetes.KubernetesCluster` ties
these to a real cluster via `kubectl.Kubectl`.
"""

from .cluster import Cluster, Transport
from .sync import SyncAction, SyncDef, Verb, plan_sync

__all__ = [
    "Cluster",
    "Transport",
    "SyncAction",
    "SyncDef",
    "Verb",
    "plan_sync",
]
