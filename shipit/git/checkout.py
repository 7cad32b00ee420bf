"""Immutable per-commit working trees.

Each fetched commit lives in its own directory
``<root>/<owner>/<name>/<sha>`` and is never modified afterwards. A tree is
populated in a temporary sibling directory and renamed into place only once
the checkout succeeded, so a partially fetched commit is never observed.

Usage:
    store = CheckoutStore(state_dir / "git")
    match store.fetch(RepoId("coq", "doc"), sha):
        case Ok(snapshot):
            print(snapshot.path)
        case Err(e):
            print(f"fetch failed: {e.message}")
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path

from shipit.core.locks import KeyedLock
from shipit.core.repo import RepoId
from shipit.core.result import Err, Ok, Result
from shipit.platform.process import ProcessError, Runner
from shipit.platform.process import run as run_process

_GIT_TIMEOUT_SECONDS = 30.0
_GIT_NETWORK_TIMEOUT_SECONDS = 3 * 60.0

__all__ = ["CheckoutStore", "CommitSnapshot", "GitError"]


@dataclass(frozen=True, slots=True)
class GitError:
    """Error from a git operation.

    Attributes:
        command: The git subcommand that failed
        message: Error message
        returncode: Process return code
    """

    command: str
    message: str
    returncode: int = 1


@dataclass(frozen=True, slots=True)
class CommitSnapshot:
    """A locally materialised working tree for one commit."""

    repo: RepoId
    sha: str
    path: Path


class CheckoutStore:
    """Fetches commits into per-commit directories under ``root``."""

    def __init__(self, root: Path, *, runner: Runner = run_process) -> None:
        self.root = root
        self._run_process = runner
        self._locks: KeyedLock[Path] = KeyedLock()

    def path_for(self, repo: RepoId, sha: str) -> Path:
        """Where ``sha`` is (or will be) checked out. Does not touch the disk."""
        return self.root / repo.owner / repo.name / sha

    def fetch(self, repo: RepoId, sha: str) -> Result[CommitSnapshot, GitError]:
        """Materialise ``sha`` locally, reusing an existing checkout.

        Concurrent calls for the same commit are serialised; the second caller
        reuses the tree produced by the first.
        """
        path = self.path_for(repo, sha)
        with self._locks.hold(path):
            if path.exists():
                if (path / ".git").exists():
                    head = self._git(path, ["rev-parse", "HEAD"])
                    if isinstance(head, Ok) and head.value.strip() == sha:
                        return Ok(CommitSnapshot(repo=repo, sha=sha, path=path))
                shutil.rmtree(path, ignore_errors=True)

            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{sha}.{uuid.uuid4().hex[:8]}.tmp")
            result = self._populate(tmp, repo, sha)
            if isinstance(result, Err):
                shutil.rmtree(tmp, ignore_errors=True)
                return result

            tmp.rename(path)
            return Ok(CommitSnapshot(repo=repo, sha=sha, path=path))

    def prune(self, keep: Collection[tuple[RepoId, str]]) -> list[Path]:
        """Delete every checkout whose commit is not in ``keep``.

        ``keep`` must name every commit a running action or deployment still
        reads from. A commit being fetched is skipped, and leftover temporary
        trees of interrupted fetches go with their commit.

        Returns:
            The removed directories.
        """
        wanted = {self.path_for(repo, sha) for repo, sha in keep}
        removed: list[Path] = []
        if not self.root.is_dir():
            return removed
        for owner in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for repo_dir in sorted(p for p in owner.iterdir() if p.is_dir()):
                for entry in sorted(repo_dir.iterdir()):
                    sha = entry.name.split(".")[1] if entry.name.startswith(".") else entry.name
                    path = repo_dir / sha
                    if path in wanted:
                        continue
                    if self._locks.run_if_idle(
                        path, lambda entry=entry: shutil.rmtree(entry, ignore_errors=True)
                    ):
                        removed.append(entry)
        return removed

    def _populate(self, tmp: Path, repo: RepoId, sha: str) -> Result[None, GitError]:
        tmp.mkdir(parents=True)
        steps: list[tuple[str, list[str]]] = [
            ("init", ["init", "--quiet"]),
            ("fetch", ["fetch", "--quiet", "--depth", "1", repo.clone_url, sha]),
            ("checkout", ["checkout", "--quiet", "--detach", "FETCH_HEAD"]),
        ]
        for name, args in steps:
            result = self._git(tmp, args)
            if isinstance(result, Err):
                e = result.error
                return Err(
                    GitError(
                        command=name,
                        message=e.stderr.strip() or f"git {name} failed for {repo}@{sha}",
                        returncode=e.returncode,
                    )
                )
        return Ok(None)

    def _git(self, path: Path, args: list[str]) -> Result[str, ProcessError]:
        command = args[0] if args else ""
        timeout = _GIT_NETWORK_TIMEOUT_SECONDS if command == "fetch" else _GIT_TIMEOUT_SECONDS
        return self._run_process(["git", "-C", str(path), *args], path, timeout=timeout)

