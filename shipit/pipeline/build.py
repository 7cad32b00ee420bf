"""Container builds for branches and pull requests.

A build fetches the commit, waits for a slot in the execution pool and runs
``docker build --pull -f <dockerfile> .`` in the checkout. The pool slot is
held only around the docker invocation and is released on every exit path.

Build streams are keyed per reference, but the image itself is keyed on
(commit, build file): a branch and a pull request at the same commit share one
successful docker build.
"""

from __future__ import annotations

import threading
from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path

from shipit.core.locks import KeyedLock
from shipit.core.repo import RepoId
from shipit.core.result import Err
from shipit.git.checkout import CheckoutStore
from shipit.output.console import ConsoleProtocol
from shipit.pipeline.cache import ResultCache, ResultStream
from shipit.pipeline.model import ActionKey, ExecutionResult, Failure, Reference, Success
from shipit.pipeline.pool import ExecutionPool
from shipit.platform.process import Runner
from shipit.platform.process import run as run_process

__all__ = ["BuildExecutor", "BuildRequest"]

_BUILD_TIMEOUT_SECONDS = 60 * 60.0

ImageKey = tuple[str, str, str, bool]


@dataclass(frozen=True, slots=True)
class BuildRequest:
    ref: Reference
    dockerfile: str
    pull: bool = True


class BuildExecutor:
    def __init__(
        self,
        *,
        cache: ResultCache,
        pool: ExecutionPool,
        checkouts: CheckoutStore,
        console: ConsoleProtocol,
        runner: Runner = run_process,
    ) -> None:
        self._cache = cache
        self._pool = pool
        self._checkouts = checkouts
        self._console = console
        self._run_process = runner
        self._built: dict[ImageKey, Success] = {}
        self._built_lock = threading.Lock()
        self._image_locks: KeyedLock[ImageKey] = KeyedLock()

    @staticmethod
    def key_for(request: BuildRequest) -> ActionKey:
        """Builds are keyed per reference; the digest covers the commit and
        build-file inputs, so a moved reference starts a new generation."""
        ref = request.ref
        return ActionKey.of(
            "build",
            f"{ref.repo.slug}:{ref.key}",
            {
                "commit": ref.commit,
                "dockerfile": request.dockerfile,
                "pull": str(request.pull),
            },
        )

    def submit(self, request: BuildRequest) -> ResultStream:
        return self._cache.resolve(self.key_for(request), lambda: self.execute(request))

    def execute(self, request: BuildRequest) -> ExecutionResult:
        ref = request.ref
        image: ImageKey = (ref.repo.slug, ref.commit, request.dockerfile, request.pull)
        with self._image_locks.hold(image):
            with self._built_lock:
                built = self._built.get(image)
            if built is not None:
                self._console.print(f"build {ref.label} ({ref.short_commit}): image already built")
                return built
            result = self._build(request)
            # Only successes are shared.
            if isinstance(result, Success):
                with self._built_lock:
                    self._built[image] = result
            return result

    def retain(self, keep: Collection[tuple[RepoId, str]]) -> int:
        """Forget built images whose commit is not in ``keep``. Returns how many."""
        live = {(repo.slug, sha) for repo, sha in keep}
        with self._built_lock:
            gone = [image for image in self._built if (image[0], image[1]) not in live]
            for image in gone:
                del self._built[image]
        return len(gone)

    def _build(self, request: BuildRequest) -> ExecutionResult:
        ref = request.ref
        snapshot = self._checkouts.fetch(ref.repo, ref.commit)
        if isinstance(snapshot, Err):
            return Failure(message=f"git {snapshot.error.command} failed: {snapshot.error.message}")

        context = snapshot.value.path
        if not (context / request.dockerfile).is_file():
            return Failure(message=f"{request.dockerfile} not found in {ref.repo}@{ref.short_commit}")

        cmd = _build_command(request.dockerfile, pull=request.pull)
        with self._pool.slot():
            self._console.info(f"build {ref.label} ({ref.short_commit})")
            result = self._run_process(cmd, context, timeout=_BUILD_TIMEOUT_SECONDS)

        if isinstance(result, Err):
            self._console.error(f"build {ref.label} ({ref.short_commit}): {result.error}")
            return Failure(message=result.error.diagnostic)

        self._console.success(f"build {ref.label} ({ref.short_commit})")
        return Success(summary="built")


def _build_command(dockerfile: str, *, pull: bool) -> list[str]:
    cmd = ["docker", "build"]
    if pull:
        cmd.append("--pull")
    cmd += ["-f", str(Path(dockerfile)), "."]
    return cmd
