"""The sync daemon.

`Daemon` owns the repository mirror, the cluster and the job queue, and runs
two workers: one that periodically syncs the cluster with the repository and
one that runs queued jobs. Both take the daemon's exclusive lock before
touching the repository or the cluster.
"""

from .daemon import Daemon, UpdateFunc
from .ratchet import SyncRatchet
from .sync import ChangeSet, Syncer

__all__ = [
    "Daemon",
    "UpdateFunc",
    "SyncRatchet",
    "ChangeSet",
    "Syncer",
]
