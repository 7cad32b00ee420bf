"""Enumerates live references of the monitored repository.

Each call to ``RefDiscovery.discover`` lists branches and open pull requests,
resolves the committer date of every head that is new or has moved, drops
references older than the staleness bound, and diffs the result against the
previous cycle.

Failures are isolated: if a listing fails, the references it would have
produced keep their previous state; if one reference's metadata cannot be
fetched, that reference keeps its previous state (or is skipped if it is
new) and the others proceed. Both are reported as ``DiscoveryError`` and
retried on the next cycle.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from shipit.core.repo import RepoId
from shipit.core.result import Err, Result
from shipit.github import api as gh
from shipit.github.api import GithubError, RemoteBranch, RemotePull
from shipit.pipeline.errors import DiscoveryError
from shipit.pipeline.model import RefKind, Reference

__all__ = [
    "DiscoveryResult",
    "GithubRefSource",
    "RefDiff",
    "RefDiscovery",
    "RefSource",
    "diff_refs",
]


class RefSource(Protocol):
    def list_branches(self, repo: RepoId) -> Result[list[RemoteBranch], GithubError]: ...

    def list_open_pulls(self, repo: RepoId) -> Result[list[RemotePull], GithubError]: ...

    def commit_date(self, repo: RepoId, sha: str) -> Result[datetime, GithubError]: ...

    def head(self, repo: RepoId, ref: str) -> Result[str, GithubError]: ...


class GithubRefSource:
    """``RefSource`` backed by the ``gh`` CLI."""

    def __init__(self, workdir: Path) -> None:
        self._workdir = workdir

    def list_branches(self, repo: RepoId) -> Result[list[RemoteBranch], GithubError]:
        return gh.list_branches(workdir=self._workdir, repo=repo)

    def list_open_pulls(self, repo: RepoId) -> Result[list[RemotePull], GithubError]:
        return gh.list_open_pulls(workdir=self._workdir, repo=repo)

    def commit_date(self, repo: RepoId, sha: str) -> Result[datetime, GithubError]:
        return gh.get_commit_date(workdir=self._workdir, repo=repo, sha=sha)

    def head(self, repo: RepoId, ref: str) -> Result[str, GithubError]:
        return gh.get_ref_head_sha(workdir=self._workdir, repo=repo, ref=ref)


@dataclass(frozen=True, slots=True)
class RefDiff:
    """Difference between two discovery cycles, keyed by ``Reference.key``."""

    added: tuple[Reference, ...] = ()
    changed: tuple[Reference, ...] = ()
    removed: tuple[Reference, ...] = ()
    unchanged: tuple[Reference, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed)

    @property
    def touched(self) -> tuple[Reference, ...]:
        """References whose commit identity is new this cycle."""
        return self.added + self.changed


def diff_refs(previous: Mapping[str, Reference], current: Mapping[str, Reference]) -> RefDiff:
    added: list[Reference] = []
    changed: list[Reference] = []
    unchanged: list[Reference] = []
    for key in sorted(current):
        ref = current[key]
        old = previous.get(key)
        if old is None:
            added.append(ref)
        elif old.commit != ref.commit:
            changed.append(ref)
        else:
            unchanged.append(ref)
    removed = [previous[key] for key in sorted(previous) if key not in current]
    return RefDiff(
        added=tuple(added),
        changed=tuple(changed),
        removed=tuple(removed),
        unchanged=tuple(unchanged),
    )


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    refs: Mapping[str, Reference]
    diff: RefDiff
    errors: tuple[DiscoveryError, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class _Head:
    kind: RefKind
    name: str
    sha: str

    @property
    def key(self) -> str:
        if self.kind == "branch":
            return f"refs/heads/{self.name}"
        return f"refs/pull/{self.name}/head"


class RefDiscovery:
    """Stateful enumerator: remembers the previous cycle to diff against.

    Args:
        source: Where branches, pulls and commit dates come from.
        repo: Monitored repository.
        staleness: References whose head commit is older are dropped.
        keep_branches: Branches exempt from the staleness bound.
        now: Wall clock (UTC).
    """

    def __init__(
        self,
        source: RefSource,
        repo: RepoId,
        *,
        staleness: timedelta,
        keep_branches: Collection[str] = (),
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._source = source
        self._repo = repo
        self._staleness = staleness
        self._keep = frozenset(keep_branches)
        self._now = now
        self._known: dict[str, Reference] = {}

    def discover(self) -> DiscoveryResult:
        errors: list[DiscoveryError] = []
        heads: list[_Head] = []
        carried: dict[str, Reference] = {}

        branches = self._source.list_branches(self._repo)
        if isinstance(branches, Err):
            errors.append(_error("branches", branches.error))
            carried.update({k: r for k, r in self._known.items() if r.kind == "branch"})
        else:
            heads += [_Head("branch", b.name, b.sha) for b in branches.value]

        pulls = self._source.list_open_pulls(self._repo)
        if isinstance(pulls, Err):
            errors.append(_error("pulls", pulls.error))
            carried.update({k: r for k, r in self._known.items() if r.kind == "pull"})
        else:
            heads += [_Head("pull", str(p.number), p.sha) for p in pulls.value]

        current: dict[str, Reference] = dict(carried)
        for head in heads:
            ref = self._resolve(head, errors)
            if ref is not None:
                current[ref.key] = ref

        cutoff = self._now() - self._staleness
        live = {key: ref for key, ref in current.items() if not self._is_stale(ref, cutoff)}

        diff = diff_refs(self._known, live)
        self._known = live
        return DiscoveryResult(refs=dict(live), diff=diff, errors=tuple(errors))

    def _resolve(self, head: _Head, errors: list[DiscoveryError]) -> Reference | None:
        previous = self._known.get(head.key)
        if previous is not None and previous.commit == head.sha and previous.committed_at is not None:
            return previous

        date = self._source.commit_date(self._repo, head.sha)
        if isinstance(date, Err):
            errors.append(_error(head.key, date.error))
            return previous

        return Reference(
            repo=self._repo,
            kind=head.kind,
            name=head.name,
            commit=head.sha,
            committed_at=date.value,
        )

    def _is_stale(self, ref: Reference, cutoff: datetime) -> bool:
        if ref.branch is not None and ref.branch in self._keep:
            return False
        if ref.committed_at is None:
            return False
        return ref.committed_at < cutoff


def _error(subject: str, error: GithubError) -> DiscoveryError:
    return DiscoveryError(subject=subject, message=error.message, hint=error.hint)
