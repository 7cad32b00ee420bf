"""Data model of the build/deploy pipeline.

- ``Reference``: a live branch or pull-request head of the monitored repository.
- ``ActionKey``: identity of one build or deploy; ``(kind, target)`` names the
  cache slot and ``digest`` hashes every input that affects the result.
- ``Pending | Success | Failure``: the closed tri-state of an execution.
- ``StatusProjection``: what is published externally for one execution state.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from shipit.core.repo import RepoId
from shipit.git.checkout import CommitSnapshot

__all__ = [
    "ActionKey",
    "ActionKind",
    "CommitSnapshot",
    "CompanionHead",
    "ExecutionResult",
    "Failure",
    "Pending",
    "RefKind",
    "Reference",
    "StatusProjection",
    "StatusState",
    "Success",
    "is_terminal",
]

ActionKind = Literal["build", "deploy"]
RefKind = Literal["branch", "pull"]
StatusState = Literal["queued", "success", "failure"]


@dataclass(frozen=True, slots=True)
class Reference:
    """A named pointer into the monitored repository's history.

    Attributes:
        repo: Owning repository.
        kind: ``branch`` or ``pull`` (pull-request head).
        name: Branch name, or the pull-request number as text.
        commit: Current head commit hash.
        committed_at: Committer date of ``commit`` when known.
    """

    repo: RepoId
    kind: RefKind
    name: str
    commit: str
    committed_at: datetime | None = None

    @property
    def branch(self) -> str | None:
        """Branch name; None for pull-request heads."""
        return self.name if self.kind == "branch" else None

    @property
    def key(self) -> str:
        """Stable identity of the reference, independent of its commit."""
        if self.kind == "branch":
            return f"refs/heads/{self.name}"
        return f"refs/pull/{self.name}/head"

    @property
    def label(self) -> str:
        if self.kind == "branch":
            return f"{self.repo}@{self.name}"
        return f"{self.repo}#{self.name}"

    @property
    def short_commit(self) -> str:
        return self.commit[:8]


@dataclass(frozen=True, slots=True)
class CompanionHead:
    """Head of the companion repository, bound into deployments.

    Attributes:
        repo: Companion repository.
        sha: Its current head commit.
        env_var: Environment variable that receives the local tree path.
    """

    repo: RepoId
    sha: str
    env_var: str


@dataclass(frozen=True, slots=True)
class ActionKey:
    """Cache identity of one action.

    Two keys with the same ``slot`` are successive generations of the same
    logical action; they are equal only when every input matches.
    """

    kind: ActionKind
    target: str
    digest: str

    @classmethod
    def of(cls, kind: ActionKind, target: str, inputs: Mapping[str, str]) -> ActionKey:
        """Build a key whose digest covers ``inputs`` (order-insensitive)."""
        payload = json.dumps(sorted(inputs.items()), separators=(",", ":"))
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return cls(kind=kind, target=target, digest=digest)

    @property
    def slot(self) -> tuple[ActionKind, str]:
        return (self.kind, self.target)

    @property
    def short(self) -> str:
        return self.digest[:8]

    def __str__(self) -> str:
        return f"{self.kind}:{self.target}@{self.short}"


@dataclass(frozen=True, slots=True)
class Pending:
    """Execution in progress; ``progress_id`` is the job identifier."""

    progress_id: str


@dataclass(frozen=True, slots=True)
class Success:
    summary: str | None = None


@dataclass(frozen=True, slots=True)
class Failure:
    message: str


ExecutionResult = Pending | Success | Failure


def is_terminal(result: ExecutionResult) -> bool:
    return not isinstance(result, Pending)


@dataclass(frozen=True, slots=True)
class StatusProjection:
    """External status for one execution state.

    Attributes:
        state: ``queued`` while pending, else ``success`` / ``failure``.
        title: One-line headline.
        summary: Short description (the failure diagnostic on failure).
        message: Detailed text; equals the diagnostic on failure.
        log_link: URL of the job log, when one can be derived.
        identifier: Job identifier correlating the status with its log.
    """

    state: StatusState
    title: str
    summary: str
    message: str
    log_link: str | None = None
    identifier: str | None = None
