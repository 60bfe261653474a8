"""Command line tool that runs the sync daemon."""

import argparse
import asyncio
import logging
from pathlib import Path
import signal
import sys
import traceback

from flux_sync.cluster.kubectl import Kubectl
from flux_sync.cluster.kubernetes import KubernetesCluster
from flux_sync.config import DaemonConfig, GitConfig, KubeConfig, SyncStateMode
from flux_sync.daemon import Daemon
from flux_sync.exceptions import FluxSyncException, InputException
from flux_sync.git_repo import GitRepo
from flux_sync.kinds import default_kind_table
from flux_sync.sync_state import GitTagSyncState, SecretSyncState, SyncState

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Keep a cluster in sync with the manifests in a git repository.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    git_group = parser.add_argument_group("git")
    git_group.add_argument("--git-url", required=True, help="URL of the repository")
    git_group.add_argument("--git-branch", default="master")
    git_group.add_argument(
        "--git-path",
        action="append",
        default=[],
        help="Path within the repository holding manifests; may be repeated",
    )
    git_group.add_argument("--git-sync-tag", default="flux-sync")
    git_group.add_argument("--git-notes-ref", default="flux")
    git_group.add_argument("--git-user", default="Weave Flux")
    git_group.add_argument("--git-email", default="support@weave.works")
    git_group.add_argument("--git-signing-key", default=None)
    git_group.add_argument("--git-readonly", action="store_true")
    git_group.add_argument("--git-timeout", type=float, default=20.0)

    kube_group = parser.add_argument_group("kubernetes")
    kube_group.add_argument("--kubectl", default="kubectl")
    kube_group.add_argument("--k8s-server", default=None)
    kube_group.add_argument("--k8s-token", default=None)
    kube_group.add_argument("--k8s-context", default=None)
    kube_group.add_argument("--k8s-client-certificate", type=Path, default=None)
    kube_group.add_argument("--k8s-client-key", type=Path, default=None)
    kube_group.add_argument("--k8s-certificate-authority", type=Path, default=None)
    kube_group.add_argument("--k8s-timeout", type=float, default=60.0)

    daemon_group = parser.add_argument_group("daemon")
    daemon_group.add_argument("--sync-interval", type=float, default=300.0)
    daemon_group.add_argument("--sync-timeout", type=float, default=120.0)
    daemon_group.add_argument("--job-timeout", type=float, default=60.0)
    daemon_group.add_argument("--job-status-cache-size", type=int, default=100)
    daemon_group.add_argument(
        "--sync-state",
        choices=[str(mode) for mode in SyncStateMode],
        default=str(SyncStateMode.GIT),
        help="Where to keep the sync marker",
    )
    daemon_group.add_argument("--k8s-secret-namespace", default="flux")
    daemon_group.add_argument("--k8s-secret-name", default="flux-git-deploy")
    return parser


def make_configs(
    args: argparse.Namespace,
) -> tuple[GitConfig, KubeConfig, DaemonConfig]:
    """Build the configuration from parsed arguments."""
    git_config = GitConfig(
        url=args.git_url,
        branch=args.git_branch,
        paths=args.git_path,
        sync_tag=args.git_sync_tag,
        notes_ref=args.git_notes_ref,
        user=args.git_user,
        email=args.git_email,
        signing_key=args.git_signing_key,
        readonly=args.git_readonly,
        timeout=args.git_timeout,
    )
    kube_config = KubeConfig(
        kubectl=args.kubectl,
        server=args.k8s_server,
        token=args.k8s_token,
        context=args.k8s_context,
        client_certificate=args.k8s_client_certificate,
        client_key=args.k8s_client_key,
        certificate_authority=args.k8s_certificate_authority,
        timeout=args.k8s_timeout,
    )
    daemon_config = DaemonConfig(
        sync_interval=args.sync_interval,
        sync_timeout=args.sync_timeout,
        job_timeout=args.job_timeout,
        job_status_cache_size=args.job_status_cache_size,
        sync_state=SyncStateMode(args.sync_state),
        secret_namespace=args.k8s_secret_namespace,
        secret_name=args.k8s_secret_name,
    )
    if git_config.readonly and daemon_config.sync_state == SyncStateMode.GIT:
        raise InputException(
            "A read-only repository needs the sync marker kept in the cluster "
            "(--sync-state=secret)"
        )
    return git_config, kube_config, daemon_config


def make_daemon(
    git_config: GitConfig, kube_config: KubeConfig, daemon_config: DaemonConfig
) -> Daemon:
    """Wire up a daemon for a real repository and cluster."""
    repo = GitRepo(git_config)
    kubectl = Kubectl(kube_config)
    cluster = KubernetesCluster(kubectl, default_kind_table())
    sync_state: SyncState
    if daemon_config.sync_state == SyncStateMode.SECRET:
        sync_state = SecretSyncState(
            kubectl, daemon_config.secret_namespace, daemon_config.secret_name
        )
    else:
        sync_state = GitTagSyncState(repo, git_config.sync_tag)
    return Daemon(repo, cluster, sync_state, daemon_config)


async def run(daemon: Daemon) -> None:
    """Run the daemon until interrupted."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await daemon.start()
    _LOGGER.info("Daemon started")
    try:
        await stop.wait()
    finally:
        _LOGGER.info("Stopping")
        await daemon.close()


def main() -> None:
    """Flux-sync daemon main entry point."""
    parser = _make_parser()
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level or "INFO")

    try:
        daemon = make_daemon(*make_configs(args))
        asyncio.run(run(daemon))
    except FluxSyncException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("flux-sync error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
