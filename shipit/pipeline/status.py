"""Projects execution states onto external (GitHub check run) statuses.

A reference is *bound* to the stream of the action it currently routes to,
under a status context. Every state of that stream is projected:

- ``Pending``  -> queued, "Docker image is building"
- ``Success``  -> completed/success, "... built successfully [and deployed]"
- ``Failure``  -> completed/failure, carrying the diagnostic message

Publication is latest-wins and idempotent per ``(reference, context)``: a
projection equal to the last one published is not sent again, and the sink
updates the existing external record in place. Publishing runs off the
caller's thread and is retried with a linear backoff; a reference whose
publication keeps failing does not hold up any other reference.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from shipit.core.locks import KeyedLock
from shipit.core.repo import RepoId
from shipit.core.result import Err, Ok, Result
from shipit.github import api as gh
from shipit.github.api import CheckRunFields, GithubError
from shipit.output.console import ConsoleProtocol
from shipit.pipeline.cache import ResultStream
from shipit.pipeline.errors import PublicationError
from shipit.pipeline.model import ExecutionResult, Failure, Pending, Reference, StatusProjection, Success

__all__ = [
    "GithubCheckRuns",
    "StatusReporter",
    "StatusSink",
    "project",
]

IMAGE_BUILDING = "Docker image is building"
IMAGE_FAILED = "Docker image failed to build"

Spawn = Callable[[Callable[[], None]], object]
Target = tuple[str, str]


def image_built(deployment: bool) -> str:
    return "Docker image was built successfully" + (" and deployed" if deployment else "")


def project(
    state: ExecutionResult,
    *,
    deployment: bool,
    job_id: str | None = None,
    url: str | None = None,
) -> StatusProjection:
    """Map one execution state to its external projection.

    Without a job id the status still carries ``url`` (if any) but no
    per-job log link.
    """
    log_link = url
    if url is not None and job_id is not None:
        log_link = f"{url.rstrip('/')}/job/{job_id}"

    match state:
        case Pending():
            return StatusProjection(
                state="queued",
                title=IMAGE_BUILDING,
                summary="Queued",
                message=IMAGE_BUILDING,
                log_link=log_link,
                identifier=job_id,
            )
        case Success():
            return StatusProjection(
                state="success",
                title=image_built(deployment),
                summary="Deployed" if deployment else "Built",
                message=image_built(deployment),
                log_link=log_link,
                identifier=job_id,
            )
        case Failure(message=message):
            return StatusProjection(
                state="failure",
                title=IMAGE_FAILED,
                summary=message,
                message=message,
                log_link=log_link,
                identifier=job_id,
            )


class StatusSink(Protocol):
    """External status API. Repeating an identical call must be harmless."""

    def set_status(
        self, ref: Reference, context: str, projection: StatusProjection
    ) -> Result[None, GithubError]: ...


class GithubCheckRuns:
    """``StatusSink`` writing GitHub check runs, one per (commit, context).

    The check run for a (commit, context) pair is looked up once and then
    updated in place. Lookup and creation happen under one lock per pair, so
    a branch and a pull request at the same commit share a single check run.
    """

    def __init__(self, workdir: Path, repo: RepoId) -> None:
        self._workdir = workdir
        self._repo = repo
        self._ids: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()
        self._runs: KeyedLock[tuple[str, str]] = KeyedLock()

    def set_status(
        self, ref: Reference, context: str, projection: StatusProjection
    ) -> Result[None, GithubError]:
        fields = _check_run_fields(ref, context, projection)
        key = (ref.commit, context)
        with self._runs.hold(key):
            with self._lock:
                run_id = self._ids.get(key)

            if run_id is None:
                found = gh.find_check_run(
                    workdir=self._workdir, repo=self._repo, sha=ref.commit, name=context
                )
                if isinstance(found, Err):
                    return found
                run_id = found.value

            if run_id is None:
                result = gh.create_check_run(workdir=self._workdir, repo=self._repo, fields=fields)
            else:
                result = gh.update_check_run(
                    workdir=self._workdir, repo=self._repo, run_id=run_id, fields=fields
                )
            if isinstance(result, Err):
                return result

            with self._lock:
                self._ids[key] = result.value
        return Ok(None)


def _check_run_fields(ref: Reference, context: str, projection: StatusProjection) -> CheckRunFields:
    if projection.state == "queued":
        return CheckRunFields(
            name=context,
            head_sha=ref.commit,
            status="queued",
            title=projection.title,
            summary=projection.summary,
            text=projection.message,
            details_url=projection.log_link,
            external_id=projection.identifier,
        )
    return CheckRunFields(
        name=context,
        head_sha=ref.commit,
        status="completed",
        conclusion=projection.state,
        title=projection.title,
        summary=projection.summary,
        text=projection.message,
        details_url=projection.log_link,
        external_id=projection.identifier,
    )


@dataclass(slots=True)
class _Binding:
    ref: Reference
    stream: ResultStream
    deployment: bool
    token: object
    unsubscribe: Callable[[], None] | None = None


class StatusReporter:
    """Keeps external statuses in line with the streams references are bound to.

    Args:
        sink: External status API.
        console: Where publication failures are reported.
        url: Base URL for log links (optional).
        attempts: Tries per publication before giving up until the next change
            or ``retry_failed``.
        delay_seconds: Backoff unit; attempt ``n`` waits ``n * delay_seconds``.
        spawn: Runs a publication flush. Defaults to a small thread pool.
        sleep: Used for backoff; injectable for tests.
    """

    def __init__(
        self,
        sink: StatusSink,
        *,
        console: ConsoleProtocol,
        url: str | None = None,
        attempts: int = 3,
        delay_seconds: float = 1.0,
        spawn: Spawn | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._sink = sink
        self._console = console
        self._url = url
        self._attempts = max(1, attempts)
        self._delay = delay_seconds
        self._executor: ThreadPoolExecutor | None = None
        if spawn is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="shipit-status")
            spawn = self._executor.submit
        self._spawn = spawn
        self._sleep = sleep
        self._lock = threading.Lock()
        self._bindings: dict[Target, _Binding] = {}
        self._desired: dict[Target, tuple[Reference, StatusProjection]] = {}
        self._published: dict[Target, tuple[Reference, StatusProjection]] = {}
        self._flushing: set[Target] = set()
        self._failures: dict[Target, PublicationError] = {}

    def bind(self, ref: Reference, context: str, stream: ResultStream, *, deployment: bool) -> bool:
        """Project ``stream`` as the status of ``ref`` under ``context``.

        Rebinding to the same stream is a no-op. Binding a different stream
        detaches the previous one; its later states are no longer published.

        Returns:
            True if the binding changed.
        """
        target: Target = (ref.key, context)
        token = object()
        with self._lock:
            existing = self._bindings.get(target)
            if existing is not None and existing.stream is stream and existing.ref == ref:
                return False
            binding = _Binding(ref=ref, stream=stream, deployment=deployment, token=token)
            self._bindings[target] = binding

        # Anything the old stream still delivers fails the token check in _on_state.
        if existing is not None and existing.unsubscribe is not None:
            existing.unsubscribe()

        unsubscribe = stream.subscribe(
            lambda s, state: self._on_state(target, token, s, state),
        )
        with self._lock:
            binding.unsubscribe = unsubscribe
        return True

    def unbind(self, ref_key: str) -> int:
        """Stop projecting anything for a reference that went away.

        The action may still complete; its result is simply not published.

        Returns:
            Number of contexts detached.
        """
        with self._lock:
            targets = [t for t in self._bindings if t[0] == ref_key]
            bindings = [self._bindings.pop(t) for t in targets]
            for target in targets:
                self._desired.pop(target, None)
                self._published.pop(target, None)
                self._failures.pop(target, None)
        for binding in bindings:
            if binding.unsubscribe is not None:
                binding.unsubscribe()
        return len(bindings)

    def bound(self, ref_key: str, context: str) -> ResultStream | None:
        with self._lock:
            binding = self._bindings.get((ref_key, context))
            return binding.stream if binding is not None else None

    def published(self, ref_key: str, context: str) -> StatusProjection | None:
        """Last projection acknowledged by the sink."""
        with self._lock:
            entry = self._published.get((ref_key, context))
            return entry[1] if entry is not None else None

    @property
    def failures(self) -> list[PublicationError]:
        with self._lock:
            return list(self._failures.values())

    def retry_failed(self) -> int:
        """Schedule another flush for every target whose last publication failed."""
        with self._lock:
            targets = [t for t in self._failures if t not in self._flushing]
            self._flushing.update(targets)
        for target in targets:
            self._spawn(lambda target=target: self._flush(target))
        return len(targets)

    def shutdown(self, *, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _on_state(
        self, target: Target, token: object, stream: ResultStream, state: ExecutionResult
    ) -> None:
        with self._lock:
            binding = self._bindings.get(target)
            if binding is None or binding.token is not token:
                return
            projection = project(
                state, deployment=binding.deployment, job_id=stream.job_id, url=self._url
            )
            self._desired[target] = (binding.ref, projection)
            if target in self._flushing:
                return
            self._flushing.add(target)
        self._spawn(lambda: self._flush(target))

    def _flush(self, target: Target) -> None:
        while True:
            with self._lock:
                want = self._desired.get(target)
                if want is None or self._published.get(target) == want:
                    self._flushing.discard(target)
                    return

            ref, projection = want
            error = self._publish(ref, target[1], projection)

            with self._lock:
                if error is None:
                    if target in self._bindings:
                        self._published[target] = want
                    self._failures.pop(target, None)
                    continue
                if self._desired.get(target) != want:
                    # A newer state arrived while retrying; publish that instead.
                    continue
                if target not in self._bindings:
                    self._flushing.discard(target)
                    return
                self._failures[target] = error
                self._flushing.discard(target)

            self._console.error(
                f"status {error.context!r} for {error.ref}: {error.message} "
                f"(after {error.attempts} attempts)"
            )
            return

    def _publish(
        self, ref: Reference, context: str, projection: StatusProjection
    ) -> PublicationError | None:
        message = ""
        for attempt in range(self._attempts):
            result = self._sink.set_status(ref, context, projection)
            if isinstance(result, Ok):
                return None
            message = result.error.message
            if result.error.hint:
                message = f"{message} ({result.error.hint})"
            if attempt < self._attempts - 1:
                self._sleep(self._delay * (attempt + 1))
        return PublicationError(
            context=context, ref=ref.label, message=message, attempts=self._attempts
        )
