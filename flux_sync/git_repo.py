"""Library for keeping a local mirror of the upstream git repository.

The daemon keeps a bare mirror of the upstream repository which is refreshed
after every sync cycle. Anything that needs files on disk, or needs to write
to the upstream, works in a short lived `Checkout` cloned from the mirror and
discarded afterwards.

Example usage:

```python
from flux_sync.config import GitConfig
from flux_sync.git_repo import GitRepo

repo = GitRepo(GitConfig(url="ssh://git@example.com/cluster.git", branch="main"))
await repo.start()
head = await repo.branch_head()
async with repo.clone(head) as checkout:
    print(await checkout.changed_files(previous_revision))
await repo.close()
```

Every git operation is run in a thread and bounded by `GitConfig.timeout`.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable
import contextlib
from dataclasses import dataclass
import logging
from pathlib import Path
import shutil
import tempfile
from typing import Any, TypeVar

import git
from mashumaro import DataClassDictMixin
from slugify import slugify

from .config import GitConfig
from .context import trace_context
from .exceptions import GitException

__all__ = [
    "Commit",
    "GitRepo",
    "Checkout",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

TAG_MESSAGE = "Sync pointer"
NO_NOTE = "no note found for object"
MISSING_REMOTE_REF = "couldn't find remote ref"
STALE_LEASE = "stale info"


@dataclass(frozen=True)
class Commit(DataClassDictMixin):
    """A commit revision and the first line of its message."""

    revision: str
    message: str


def _split_log(out: str) -> list[Commit]:
    commits: list[Commit] = []
    for line in out.splitlines():
        if not line.strip():
            continue
        revision, _, message = line.partition("|")
        commits.append(Commit(revision=revision, message=message))
    return commits


def _is_lost_lease(err: git.GitCommandError) -> bool:
    stderr = str(err.stderr).lower()
    return STALE_LEASE in stderr


async def _run_git(
    timeout: float, desc: str, func: Callable[..., _T], *args: Any, **kwargs: Any
) -> _T:
    """Run a blocking GitPython call in a thread with a timeout."""
    _LOGGER.debug("git %s", desc)
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout
        )
    except asyncio.TimeoutError as err:
        raise GitException(f"git {desc} timed out after {timeout}s") from err
    except git.GitCommandError as err:
        raise GitException(f"git {desc} failed: {err.stderr.strip()}") from err


class _GitBase(ABC):
    """Operations shared by the mirror and working clones."""

    _config: GitConfig

    @property
    @abstractmethod
    def _repo(self) -> git.Repo:
        """The underlying GitPython repository."""

    async def _git(self, desc: str, func: Callable[..., _T], *args: Any) -> _T:
        return await _run_git(self._config.timeout, desc, func, *args)

    async def revision(self, ref: str) -> str:
        """Return the commit a ref points to."""
        out = await self._git(
            f"rev-list {ref}", self._repo.git.rev_list, "--max-count", "1", ref, "--"
        )
        return out.strip()

    async def remote_tag(self, tag: str) -> tuple[str, str] | None:
        """Return the upstream tag object and the commit it points to.

        For a lightweight tag both values are the commit.
        """
        ref = f"refs/tags/{tag}"
        out = await self._git(
            f"ls-remote {ref}",
            self._repo.git.ls_remote,
            "origin",
            ref,
            f"{ref}^{{}}",
        )
        refs: dict[str, str] = {}
        for line in out.splitlines():
            sha, _, name = line.partition("\t")
            refs[name.strip()] = sha.strip()
        if ref not in refs:
            return None
        obj = refs[ref]
        return obj, refs.get(f"{ref}^{{}}", obj)


class Checkout(_GitBase):
    """A working clone of the repository checked out at a revision."""

    def __init__(self, repo: git.Repo, config: GitConfig) -> None:
        self._working = repo
        self._config = config
        self.dir = Path(repo.working_dir)

    @property
    def _repo(self) -> git.Repo:
        return self._working

    def manifest_dirs(self) -> list[Path]:
        """Return the directories holding manifests, relative to the checkout."""
        if not self._config.paths:
            return [Path(".")]
        return [Path(path) for path in self._config.paths]

    async def head_revision(self) -> str:
        return await self.revision("HEAD")

    async def changed_files(self, ref: str) -> list[str]:
        """Return files added or modified since `ref` within the manifest paths.

        Deleted files are not reported since there is nothing left to read.
        """
        out = await self._git(
            f"diff {ref}",
            self._repo.git.diff,
            "--name-only",
            "--diff-filter=ACMRT",
            ref,
            "--",
            *self._config.paths,
        )
        return [line for line in out.splitlines() if line.strip()]

    async def is_dirty(self) -> bool:
        return await asyncio.to_thread(self._repo.is_dirty, untracked_files=True)

    async def commit_and_push(self, message: str, note: str | None = None) -> str:
        """Commit all changes, attach a note and push to the branch upstream.

        Returns the new revision.
        """
        if self._config.readonly:
            raise GitException("Repository is read-only, refusing to push")
        commit_args = ["--no-verify", "-a", "-m", message]
        if self._config.signing_key:
            commit_args.append(f"--gpg-sign={self._config.signing_key}")
        await self._git("add", self._repo.git.add, "--all", "--", ".")
        await self._git("commit", self._repo.git.commit, *commit_args)
        refs = [f"HEAD:refs/heads/{self._config.branch}"]
        if note is not None:
            notes_ref = f"refs/notes/{self._config.notes_ref}"
            await self._git(
                "notes add",
                self._repo.git.notes,
                "--ref",
                self._config.notes_ref,
                "add",
                "-m",
                note,
                "HEAD",
            )
            refs.append(f"{notes_ref}:{notes_ref}")
        await self._git("push", self._repo.git.push, "origin", *refs)
        return await self.head_revision()

    async def move_tag_and_push(self, tag: str, expected: str, revision: str) -> bool:
        """Move `tag` to `revision` if it still points at `expected` upstream.

        An empty `expected` requires the tag not to exist. Returns false if
        the upstream tag is somewhere else, including when another writer
        moves it while the push is in flight.
        """
        current = await self.remote_tag(tag)
        lease = ""
        if current is not None:
            tag_object, target = current
            if target != expected:
                _LOGGER.info(
                    "Tag %s is at %s upstream, expected %s", tag, target, expected
                )
                return False
            lease = tag_object
        elif expected:
            _LOGGER.info("Tag %s no longer exists upstream", tag)
            return False
        tag_args = ["--force", "-a", "-m", TAG_MESSAGE]
        if self._config.signing_key:
            tag_args.append(f"--local-user={self._config.signing_key}")
        await self._git("tag", self._repo.git.tag, *tag_args, tag, revision)
        ref = f"refs/tags/{tag}"
        try:
            await _run_git(
                self._config.timeout,
                f"push {ref}",
                self._repo.git.push,
                f"--force-with-lease={ref}:{lease}",
                "origin",
                f"{ref}:{ref}",
            )
        except GitException as err:
            if isinstance(err.__cause__, git.GitCommandError) and _is_lost_lease(
                err.__cause__
            ):
                _LOGGER.info("Tag %s was moved by another writer", tag)
                return False
            raise
        return True


class GitRepo(_GitBase):
    """A mirror of the upstream repository."""

    def __init__(self, config: GitConfig, workdir: Path | None = None) -> None:
        self._config = config
        self._workdir = workdir
        self._dir: Path | None = None
        self._repo_obj: git.Repo | None = None

    @property
    def _repo(self) -> git.Repo:
        if self._repo_obj is None:
            raise GitException("Repository has not been started")
        return self._repo_obj

    @property
    def config(self) -> GitConfig:
        return self._config

    @property
    def dir(self) -> Path:
        if self._dir is None:
            raise GitException("Repository has not been started")
        return self._dir

    def _prefix(self) -> str:
        name = self._config.url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")
        return f"flux-sync-{slugify(name, max_length=40)}-"

    async def start(self) -> None:
        """Create the mirror from the upstream repository."""
        if self._repo_obj is not None:
            return
        with trace_context("Mirror"):
            self._dir = Path(
                tempfile.mkdtemp(prefix=self._prefix(), dir=self._workdir)
            )
            _LOGGER.info("Mirroring %s to %s", self._config.url, self._dir)
            self._repo_obj = await _run_git(
                self._config.timeout,
                "clone --mirror",
                git.Repo.clone_from,
                self._config.url,
                str(self._dir),
                mirror=True,
            )

    async def refresh(self) -> None:
        """Fetch branches, tags and notes from upstream."""
        with trace_context("Refresh"):
            try:
                await self._git(
                    "fetch", self._repo.git.fetch, "--prune", "--tags", "origin"
                )
            except GitException as err:
                if MISSING_REMOTE_REF not in str(err).lower():
                    raise

    async def branch_head(self) -> str:
        return await self.revision(self._config.branch)

    async def _log(self, refspec: str, paths: list[str]) -> list[Commit]:
        out = await self._git(
            f"log {refspec}",
            self._repo.git.log,
            "--pretty=format:%H|%s",
            "--reverse",
            refspec,
            "--",
            *paths,
        )
        return _split_log(out)

    async def commits_before(
        self, ref: str, paths: list[str] | None = None
    ) -> list[Commit]:
        """Return the commits reachable from `ref`, oldest first."""
        return await self._log(ref, paths or [])

    async def commits_between(
        self, ref1: str, ref2: str, paths: list[str] | None = None
    ) -> list[Commit]:
        """Return commits after `ref1` up to and including `ref2`, oldest first."""
        return await self._log(f"{ref1}..{ref2}", paths or [])

    async def delete_tag(self, tag: str) -> None:
        """Delete `tag` upstream and in the mirror."""
        await self._git(
            "push --delete",
            self._repo.git.push,
            "--delete",
            self._config.url,
            f"refs/tags/{tag}",
        )
        with contextlib.suppress(GitException):
            await self._git("tag -d", self._repo.git.tag, "-d", tag)

    async def note_rev_list(self) -> set[str]:
        """Return the revisions that have a note attached."""
        out = await self._git(
            "notes list",
            self._repo.git.notes,
            "--ref",
            self._config.notes_ref,
            "list",
        )
        revisions: set[str] = set()
        for line in out.splitlines():
            fields = line.split()
            if len(fields) == 2:
                revisions.add(fields[1])
        return revisions

    async def get_note(self, revision: str) -> str | None:
        """Return the note attached to `revision`, or None."""
        try:
            return await self._git(
                f"notes show {revision}",
                self._repo.git.notes,
                "--ref",
                self._config.notes_ref,
                "show",
                revision,
            )
        except GitException as err:
            if NO_NOTE in str(err).lower():
                return None
            raise

    @contextlib.asynccontextmanager
    async def clone(self, ref: str | None = None) -> AsyncGenerator[Checkout, None]:
        """Yield a working clone at `ref` that is removed on exit.

        The clone pushes directly to the upstream repository.
        """
        path = Path(tempfile.mkdtemp(prefix=self._prefix(), dir=self._workdir))
        try:
            with trace_context("Clone"):
                repo = await self._git(
                    "clone",
                    git.Repo.clone_from,
                    str(self.dir),
                    str(path),
                )
                await self._git(
                    "fetch notes",
                    repo.git.fetch,
                    str(self.dir),
                    "+refs/notes/*:refs/notes/*",
                )
                await self._git(
                    "set-url", repo.git.remote, "set-url", "origin", self._config.url
                )
                with repo.config_writer() as writer:
                    writer.set_value("user", "name", self._config.user)
                    writer.set_value("user", "email", self._config.email)
                await self._git(
                    "checkout",
                    repo.git.checkout,
                    "-B",
                    self._config.branch,
                    ref or f"origin/{self._config.branch}",
                    "--",
                )
            checkout = Checkout(repo, self._config)
            yield checkout
        finally:
            await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)

    async def close(self) -> None:
        """Remove the mirror from disk."""
        if self._dir is not None:
            await asyncio.to_thread(shutil.rmtree, self._dir, ignore_errors=True)
        self._dir = None
        self._repo_obj = None
