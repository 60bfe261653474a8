"""Tests for storing the sync marker."""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest

from flux_sync.cluster.kubectl import Kubectl
from flux_sync.config import KubeConfig
from flux_sync.exceptions import ConflictException, InputException
from flux_sync.git_repo import GitRepo
from flux_sync.sync_state import (
    SYNC_MARKER_ANNOTATION,
    GitTagSyncState,
    MarkerUpdate,
    SecretSyncState,
)

from .support import Upstream, manifest


@pytest.fixture
async def repos(
    upstream: Upstream, tmp_path: Path
) -> AsyncGenerator[tuple[GitRepo, GitRepo], None]:
    upstream.commit({"a.yaml": manifest("ConfigMap", "a")})
    first = GitRepo(upstream.config(), workdir=tmp_path)
    second = GitRepo(upstream.config(), workdir=tmp_path)
    await first.start()
    await second.start()
    yield first, second
    await first.close()
    await second.close()


async def test_git_tag(repos: tuple[GitRepo, GitRepo], upstream: Upstream) -> None:
    """Test moving the marker tag forward."""
    repo, _ = repos
    state = GitTagSyncState(repo)
    assert str(state) == f"tag 'flux-sync' in {upstream.url}"
    assert await state.get_revision() == ""

    first = await repo.branch_head()
    assert await state.update_marker("", first) == MarkerUpdate.MOVED
    assert await state.get_revision() == first

    second = upstream.commit({"b.yaml": manifest("ConfigMap", "b")})
    await repo.refresh()
    assert await state.update_marker(first, second) == MarkerUpdate.MOVED
    assert await state.get_revision() == second

    await state.delete_marker()
    assert await state.get_revision() == ""


async def test_git_tag_lost_race(
    repos: tuple[GitRepo, GitRepo], upstream: Upstream
) -> None:
    """Test two daemons sharing a tag cannot move it from a stale value."""
    first_repo, second_repo = repos
    first = GitTagSyncState(first_repo, "shared")
    second = GitTagSyncState(second_repo, "shared")
    head = await first_repo.branch_head()

    assert await first.update_marker("", head) == MarkerUpdate.MOVED
    assert await second.update_marker("", head) == MarkerUpdate.LOST_RACE
    # The second daemon reads the upstream tag, not a stale copy.
    assert await second.get_revision() == head


class FakeKubectl(Kubectl):
    """Keeps a single Secret in memory instead of calling kubectl."""

    def __init__(self, secret: dict[str, Any] | None) -> None:
        super().__init__(KubeConfig())
        self.secret = secret
        self.patches: list[dict[str, Any]] = []
        self.conflict = False

    async def get_json(
        self, kind: str, namespace: str, name: str
    ) -> dict[str, Any] | None:
        assert (kind, namespace, name) == ("secret", "flux", "flux-git-deploy")
        return self.secret

    async def merge_patch(
        self, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> None:
        if self.conflict:
            raise ConflictException("the object has been modified")
        self.patches.append(patch)
        assert self.secret is not None
        metadata = self.secret.setdefault("metadata", {})
        annotations = metadata.setdefault("annotations", {})
        for key, value in patch["metadata"]["annotations"].items():
            if value is None:
                annotations.pop(key, None)
            else:
                annotations[key] = value
        metadata["resourceVersion"] = str(int(metadata["resourceVersion"]) + 1)


@pytest.fixture
def kubectl() -> FakeKubectl:
    return FakeKubectl(
        {"metadata": {"name": "flux-git-deploy", "resourceVersion": "1"}}
    )


async def test_secret_initialised(kubectl: FakeKubectl) -> None:
    """Test a missing annotation is initialised to an empty marker."""
    state = SecretSyncState(kubectl, "flux", "flux-git-deploy")
    assert await state.get_revision() == ""
    assert kubectl.patches == [
        {"metadata": {"annotations": {SYNC_MARKER_ANNOTATION: ""}}}
    ]


async def test_secret_update(kubectl: FakeKubectl) -> None:
    """Test moving the marker with the resource version as a precondition."""
    state = SecretSyncState(kubectl, "flux", "flux-git-deploy")
    assert await state.update_marker("", "abc") == MarkerUpdate.MOVED
    assert kubectl.patches[-1] == {
        "metadata": {
            "annotations": {SYNC_MARKER_ANNOTATION: "abc"},
            "resourceVersion": "1",
        }
    }
    assert await state.get_revision() == "abc"

    assert await state.update_marker("", "def") == MarkerUpdate.LOST_RACE
    assert await state.get_revision() == "abc"

    await state.delete_marker()
    assert await state.get_revision() == ""


async def test_secret_conflict(kubectl: FakeKubectl) -> None:
    """Test a concurrent write to the Secret loses the race."""
    state = SecretSyncState(kubectl, "flux", "flux-git-deploy")
    kubectl.conflict = True
    assert await state.update_marker("", "abc") == MarkerUpdate.LOST_RACE


async def test_secret_missing() -> None:
    state = SecretSyncState(FakeKubectl(None), "flux", "flux-git-deploy")
    with pytest.raises(InputException, match="flux/flux-git-deploy not found"):
        await state.get_revision()
