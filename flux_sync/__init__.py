"""
flux-sync keeps a Kubernetes cluster in sync with the manifests committed to a
git repository.

The main pieces are:

- `git_repo`: a mirror of the repository and short lived working clones.
- `cluster`: planning and applying changes to the cluster in a safe order.
- `sync_state`: where the revision most recently applied is recorded.
- `job`: a queue of changes to make to the repository.
- `daemon`: the loop that ties these together.
"""

__all__ = [
    "cluster",
    "config",
    "daemon",
    "event",
    "exceptions",
    "git_repo",
    "job",
    "kinds",
    "note",
    "resource",
    "sync_state",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
