"""Configuration for the sync daemon.

The daemon is configured from command line flags, see `flux_sync.tool.fluxd`,
which are collected into the dataclasses here and passed to each component.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

__all__ = [
    "GitConfig",
    "KubeConfig",
    "DaemonConfig",
    "SyncStateMode",
]


@dataclass
class GitConfig:
    """Settings for the upstream git repository."""

    url: str
    """URL of the repository holding the declared state."""

    branch: str = "master"

    paths: list[str] = field(default_factory=list)
    """Directories within the repository that hold manifests, all when empty."""

    sync_tag: str = "flux-sync"
    """Tag used as the sync marker when the marker is kept in git."""

    notes_ref: str = "flux"
    """Ref holding the notes attached to commits made by jobs."""

    user: str = "Weave Flux"
    email: str = "support@weave.works"

    signing_key: str | None = None
    """Key used to sign commits and tags, unsigned when unset."""

    readonly: bool = False
    """Never push to the repository; requires the marker to be kept in the cluster."""

    timeout: float = 20.0
    """Seconds allowed for each git operation."""


@dataclass
class KubeConfig:
    """Settings for reaching the cluster with kubectl."""

    kubectl: str = "kubectl"
    """Path to the kubectl binary."""

    server: str | None = None
    token: str | None = None
    username: str | None = None
    password: str | None = None
    client_certificate: Path | None = None
    client_key: Path | None = None
    certificate_authority: Path | None = None
    context: str | None = None

    timeout: float = 60.0
    """Seconds allowed for each kubectl invocation."""


class SyncStateMode(StrEnum):
    """Where the sync marker is stored."""

    GIT = "git"
    SECRET = "secret"


@dataclass
class DaemonConfig:
    """Settings for the sync and job loops."""

    sync_interval: float = 300.0
    """Seconds between sync cycles when nothing asks for one sooner."""

    sync_timeout: float = 120.0
    """Seconds allowed for a whole sync cycle."""

    job_timeout: float = 60.0
    """Seconds allowed for a single job."""

    job_status_cache_size: int = 100

    sync_state: SyncStateMode = SyncStateMode.GIT

    secret_namespace: str = "flux"
    secret_name: str = "flux-git-deploy"
