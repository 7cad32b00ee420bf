"""Compose-based deployments of the primary and staging branches.

Each slot is a compose project (``--project-name``) brought up from the
fetched commit's tree with three environment variables:

- the companion checkout path (``DOC_PATH`` by default),
- ``GIT_COMMIT``, the deployed commit,
- ``LOCAL_PORT``, the slot's external port.

Deploys do not take a build-pool slot.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass

from shipit.core.config import SlotConfig
from shipit.core.repo import RepoId
from shipit.core.result import Err
from shipit.git.checkout import CheckoutStore
from shipit.output.console import ConsoleProtocol
from shipit.pipeline.cache import ResultCache, ResultStream
from shipit.pipeline.model import (
    ActionKey,
    CompanionHead,
    ExecutionResult,
    Failure,
    Reference,
    Success,
)
from shipit.platform.process import Runner
from shipit.platform.process import run as run_process

__all__ = ["DeployExecutor", "DeployRequest", "deploy_env"]

_DEPLOY_TIMEOUT_SECONDS = 20 * 60.0


@dataclass(frozen=True, slots=True)
class DeployRequest:
    slot: SlotConfig
    ref: Reference
    compose_file: str
    env: tuple[tuple[str, str], ...]
    companion: CompanionHead | None = None
    pull: bool = True

    @property
    def env_map(self) -> dict[str, str]:
        return dict(self.env)


def deploy_env(
    ref: Reference,
    slot: SlotConfig,
    companion: CompanionHead | None,
    checkouts: CheckoutStore,
) -> tuple[tuple[str, str], ...]:
    """Environment for ``compose up``, sorted by name."""
    env: dict[str, str] = {
        "GIT_COMMIT": ref.commit,
        "LOCAL_PORT": str(slot.port),
    }
    if companion is not None:
        env[companion.env_var] = str(checkouts.path_for(companion.repo, companion.sha))
    return tuple(sorted(env.items()))


class DeployExecutor:
    def __init__(
        self,
        *,
        cache: ResultCache,
        checkouts: CheckoutStore,
        console: ConsoleProtocol,
        runner: Runner = run_process,
    ) -> None:
        self._cache = cache
        self._checkouts = checkouts
        self._console = console
        self._run_process = runner
        self._deployed: dict[str, DeployRequest] = {}
        self._deployed_lock = threading.Lock()

    def request_for(
        self,
        ref: Reference,
        slot: SlotConfig,
        companion: CompanionHead | None,
        *,
        compose_file: str,
        pull: bool = True,
    ) -> DeployRequest:
        return DeployRequest(
            slot=slot,
            ref=ref,
            compose_file=compose_file,
            env=deploy_env(ref, slot, companion, self._checkouts),
            companion=companion,
            pull=pull,
        )

    @staticmethod
    def key_for(request: DeployRequest) -> ActionKey:
        """Deploys are keyed per slot; an unchanged target is not redeployed."""
        inputs: dict[str, str] = {
            "commit": request.ref.commit,
            "compose_file": request.compose_file,
            "pull": str(request.pull),
        }
        inputs.update({f"env:{name}": value for name, value in request.env})
        return ActionKey.of("deploy", request.slot.name, inputs)

    def submit(self, request: DeployRequest) -> ResultStream:
        return self._cache.resolve(self.key_for(request), lambda: self.execute(request))

    def in_use(self) -> set[tuple[RepoId, str]]:
        """Commits the running deployments were brought up from, companion included."""
        with self._deployed_lock:
            requests = list(self._deployed.values())
        commits: set[tuple[RepoId, str]] = set()
        for request in requests:
            commits.add((request.ref.repo, request.ref.commit))
            if request.companion is not None:
                commits.add((request.companion.repo, request.companion.sha))
        return commits

    def execute(self, request: DeployRequest) -> ExecutionResult:
        ref = request.ref
        snapshot = self._checkouts.fetch(ref.repo, ref.commit)
        if isinstance(snapshot, Err):
            return Failure(message=f"git {snapshot.error.command} failed: {snapshot.error.message}")

        if request.companion is not None:
            companion = self._checkouts.fetch(request.companion.repo, request.companion.sha)
            if isinstance(companion, Err):
                return Failure(
                    message=f"git {companion.error.command} failed for "
                    f"{request.companion.repo}: {companion.error.message}"
                )

        workdir = snapshot.value.path
        if not (workdir / request.compose_file).is_file():
            return Failure(message=f"{request.compose_file} not found in {ref.repo}@{ref.short_commit}")

        self._console.info(f"deploy {ref.label} ({ref.short_commit}) -> {request.slot.name}")
        result = self._run_process(
            compose_command(request.slot.name, request.compose_file, pull=request.pull),
            workdir,
            request.env_map,
            timeout=_DEPLOY_TIMEOUT_SECONDS,
        )
        if isinstance(result, Err):
            self._console.error(f"deploy {request.slot.name}: {result.error}")
            return Failure(message=result.error.diagnostic)

        with self._deployed_lock:
            self._deployed[request.slot.name] = request
        self._console.success(f"deploy {request.slot.name} at {ref.short_commit}")
        return Success(summary="deployed")


def compose_command(name: str, compose_file: str, *, pull: bool) -> list[str]:
    cmd = [
        "docker",
        "compose",
        "--project-name",
        name,
        "--file",
        compose_file,
        "up",
        "--detach",
        "--remove-orphans",
    ]
    if pull:
        cmd += ["--pull", "always"]
    return cmd


def env_lines(env: Mapping[str, str]) -> list[str]:
    """``NAME=value`` lines, as shown by ``shipit refs``."""
    return [f"{name}={value}" for name, value in sorted(env.items())]
