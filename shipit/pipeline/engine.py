"""Orchestration loop: discovery -> routing -> cached execution -> status.

``Engine.step`` is level-triggered. Every live reference is routed and
resolved through the cache on every step; references whose action key did
not change get their existing stream back and their status binding is left
alone, so a step with unchanged inputs does nothing, and a step with one
changed input starts exactly the actions whose key changed.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from shipit.core.config import Config
from shipit.core.repo import RepoId
from shipit.core.result import Err
from shipit.git.checkout import CheckoutStore
from shipit.output.console import ConsoleProtocol
from shipit.pipeline.build import BuildExecutor, BuildRequest
from shipit.pipeline.cache import ResultCache, ResultStream
from shipit.pipeline.deploy import DeployExecutor
from shipit.pipeline.discovery import GithubRefSource, RefDiff, RefDiscovery, RefSource
from shipit.pipeline.errors import DiscoveryError
from shipit.pipeline.model import CompanionHead, Reference
from shipit.pipeline.pool import ExecutionPool
from shipit.pipeline.router import Action, BuildAction, DeployAction, route
from shipit.pipeline.status import GithubCheckRuns, StatusReporter

__all__ = ["Engine", "StepReport", "build_engine"]


@dataclass(frozen=True, slots=True)
class StepReport:
    """What one step observed and did.

    Attributes:
        diff: Reference changes since the previous step.
        actions: Routed action per live reference key.
        streams: Stream each live reference is bound to.
        rebound: Reference keys whose status binding changed this step.
        deferred: Deploy references skipped until the companion head is known.
        errors: Transient discovery errors (retried next step).
    """

    diff: RefDiff
    actions: Mapping[str, Action] = field(default_factory=dict)
    streams: Mapping[str, ResultStream] = field(default_factory=dict)
    rebound: tuple[str, ...] = ()
    deferred: tuple[Reference, ...] = ()
    errors: tuple[DiscoveryError, ...] = ()

    @property
    def is_noop(self) -> bool:
        return self.diff.is_empty and not self.rebound


class Engine:
    def __init__(
        self,
        config: Config,
        *,
        discovery: RefDiscovery,
        heads: RefSource,
        cache: ResultCache,
        builds: BuildExecutor,
        deploys: DeployExecutor,
        checkouts: CheckoutStore,
        reporter: StatusReporter,
        console: ConsoleProtocol,
    ) -> None:
        self.config = config
        self._discovery = discovery
        self._heads = heads
        self._cache = cache
        self._builds = builds
        self._deploys = deploys
        self._checkouts = checkouts
        self._reporter = reporter
        self._console = console
        self._companion: CompanionHead | None = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._last: StepReport | None = None
        self._inflight: dict[ResultStream, set[tuple[RepoId, str]]] = {}

    @property
    def last_report(self) -> StepReport | None:
        return self._last

    def step(self) -> StepReport:
        found = self._discovery.discover()
        for error in found.errors:
            self._console.warning(f"discovery: {error.subject}: {error.message}")
        self._log_diff(found.diff)

        for ref in found.diff.removed:
            self._reporter.unbind(ref.key)

        companion = self._resolve_companion()

        actions: dict[str, Action] = {}
        streams: dict[str, ResultStream] = {}
        rebound: list[str] = []
        deferred: list[Reference] = []
        for key in sorted(found.refs):
            ref = found.refs[key]
            action = route(ref, companion, self.config)
            if isinstance(action, DeployAction) and self.config.companion is not None and companion is None:
                deferred.append(ref)
                continue

            stream = self._submit(action)
            self._inflight[stream] = _commits(action)
            actions[key] = action
            streams[key] = stream
            deployment = isinstance(action, DeployAction)
            if self._reporter.bind(ref, action.context, stream, deployment=deployment):
                rebound.append(key)
                self._console.info(f"{ref.label} ({ref.short_commit}) -> {stream.key} [{stream.job_id}]")

        for ref in deferred:
            self._console.warning(f"{ref.label}: deploy deferred, companion head unknown")

        self._collect(found.refs, companion, streams)

        self._reporter.retry_failed()

        report = StepReport(
            diff=found.diff,
            actions=actions,
            streams=streams,
            rebound=tuple(rebound),
            deferred=tuple(deferred),
            errors=found.errors,
        )
        self._last = report
        return report

    def notify(self) -> None:
        """Change notification: run the next step now instead of at the next poll."""
        self._wake.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def run(self, *, once: bool = False) -> None:
        """Step until ``stop`` is called, waking on ``notify`` or the poll interval."""
        interval = self.config.pipeline.poll_interval_seconds
        while not self._stop.is_set():
            self._wake.clear()
            self.step()
            if once:
                return
            self._wake.wait(interval)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for every stream bound in the last step to finish."""
        if self._last is None:
            return True
        streams = list(self._last.streams.values())
        for stream in streams:
            stream.wait(timeout)
        return all(stream.done for stream in streams)

    def shutdown(self) -> None:
        self._cache.shutdown(wait=True)
        self._reporter.shutdown(wait=True)

    def _submit(self, action: Action) -> ResultStream:
        pipeline = self.config.pipeline
        match action:
            case BuildAction(ref=ref):
                return self._builds.submit(
                    BuildRequest(ref=ref, dockerfile=pipeline.dockerfile, pull=pipeline.pull)
                )
            case DeployAction(ref=ref, slot=slot, companion=companion):
                request = self._deploys.request_for(
                    ref, slot, companion, compose_file=pipeline.compose_file, pull=pipeline.pull
                )
                return self._deploys.submit(request)

    def _collect(
        self,
        refs: Mapping[str, Reference],
        companion: CompanionHead | None,
        streams: Mapping[str, ResultStream],
    ) -> None:
        """Drop cache slots, images and checkouts nothing refers to any more."""
        ttl = self.config.pipeline.cache_ttl_seconds
        if ttl is not None:
            for kind, target in self._cache.prune(ttl):
                self._console.print(f"evicted {kind}:{target}")
        builds = {s.key.target for s in streams.values() if s.key.kind == "build"}
        for kind, target in self._cache.retain("build", builds):
            self._console.print(f"dropped {kind}:{target}")

        self._inflight = {s: c for s, c in self._inflight.items() if not s.done}
        keep = {(ref.repo, ref.commit) for ref in refs.values()}
        if companion is not None:
            keep.add((companion.repo, companion.sha))
        for commits in self._inflight.values():
            keep |= commits
        keep |= self._deploys.in_use()
        self._builds.retain(keep)
        for path in self._checkouts.prune(keep):
            self._console.print(f"removed checkout {path}")

    def _resolve_companion(self) -> CompanionHead | None:
        companion = self.config.companion
        if companion is None:
            return None

        head = self._heads.head(companion.repo, companion.branch)
        if isinstance(head, Err):
            self._console.warning(
                f"companion {companion.repo}@{companion.branch}: {head.error.message}"
            )
            return self._companion

        current = CompanionHead(repo=companion.repo, sha=head.value, env_var=companion.env_var)
        if current != self._companion:
            self._console.info(f"companion {companion.repo}@{companion.branch} at {head.value[:8]}")
        self._companion = current
        return current

    def _log_diff(self, diff: RefDiff) -> None:
        for ref in diff.added:
            self._console.info(f"new {ref.label} at {ref.short_commit}")
        for ref in diff.changed:
            self._console.info(f"moved {ref.label} to {ref.short_commit}")
        for ref in diff.removed:
            self._console.info(f"gone {ref.label}")


def _commits(action: Action) -> set[tuple[RepoId, str]]:
    commits = {(action.ref.repo, action.ref.commit)}
    if isinstance(action, DeployAction) and action.companion is not None:
        commits.add((action.companion.repo, action.companion.sha))
    return commits


def build_engine(config: Config, *, console: ConsoleProtocol, workdir: Path) -> Engine:
    """Wire an engine against GitHub (via ``gh``), git and the local Docker daemon."""
    source = GithubRefSource(workdir)
    cache = ResultCache()
    checkouts = CheckoutStore(config.pipeline.state_dir / "git")
    pool = ExecutionPool(config.pipeline.pool_capacity, label="docker")
    discovery = RefDiscovery(
        source,
        config.repo,
        staleness=timedelta(days=config.pipeline.staleness_days),
        keep_branches=(config.branches.primary,),
    )
    reporter = StatusReporter(
        GithubCheckRuns(workdir, config.repo),
        console=console,
        url=config.status.url,
        attempts=config.status.publish_attempts,
        delay_seconds=config.status.publish_delay_seconds,
    )
    return Engine(
        config,
        discovery=discovery,
        heads=source,
        cache=cache,
        builds=BuildExecutor(cache=cache, pool=pool, checkouts=checkouts, console=console),
        deploys=DeployExecutor(cache=cache, checkouts=checkouts, console=console),
        checkouts=checkouts,
        reporter=reporter,
        console=console,
    )
