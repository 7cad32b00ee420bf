"""Tests for container builds."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from shipit.core.repo import RepoId
from shipit.core.result import Err, Ok, Result
from shipit.git.checkout import CheckoutStore
from shipit.output.console import MockConsole
from shipit.pipeline.build import BuildExecutor, BuildRequest
from shipit.pipeline.cache import ResultCache
from shipit.pipeline.model import Failure, Reference, Success
from shipit.pipeline.pool import ExecutionPool
from shipit.platform.process import ProcessError

REPO = RepoId("coq", "rocq-prover.org")


class FakeHost:
    """git writes a Dockerfile into each checkout; docker answers ``docker_result``."""

    def __init__(
        self,
        *,
        docker_result: Result[str, ProcessError] | None = None,
        dockerfile: str = "Dockerfile",
        git_fails: bool = False,
    ) -> None:
        self.docker_result: Result[str, ProcessError] = docker_result or Ok("")
        self.dockerfile = dockerfile
        self.git_fails = git_fails
        self.docker_calls: list[tuple[list[str], Path]] = []
        self.pool: ExecutionPool | None = None
        self.in_use_during_docker: list[int] = []

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        del env, timeout
        if cmd[0] == "git":
            sub = cmd[3]
            if self.git_fails and sub == "fetch":
                return Err(ProcessError(tuple(cmd), 128, "", "fatal: couldn't find remote ref"))
            if sub == "init":
                (cwd / ".git").mkdir()
            elif sub == "checkout":
                target = cwd / self.dockerfile
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text("FROM scratch\n", encoding="utf-8")
            elif sub == "rev-parse":
                return Ok(cwd.name)
            return Ok("")
        self.docker_calls.append((cmd, cwd))
        if self.pool is not None:
            self.in_use_during_docker.append(self.pool.in_use)
        return self.docker_result


def _executor(tmp_path: Path, host: FakeHost) -> tuple[BuildExecutor, ExecutionPool, MockConsole]:
    pool = ExecutionPool(1)
    host.pool = pool
    console = MockConsole()
    executor = BuildExecutor(
        cache=ResultCache(spawn=lambda fn: fn()),
        pool=pool,
        checkouts=CheckoutStore(tmp_path, runner=host),
        console=console,
        runner=host,
    )
    return executor, pool, console


def _ref(commit: str = "c" * 40, name: str = "feature") -> Reference:
    return Reference(REPO, "branch", name, commit)


def test_successful_build(tmp_path: Path) -> None:
    host = FakeHost()
    executor, pool, console = _executor(tmp_path, host)

    stream = executor.submit(BuildRequest(ref=_ref(), dockerfile="Dockerfile"))

    assert stream.state == Success("built")
    cmd, cwd = host.docker_calls[0]
    assert cmd == ["docker", "build", "--pull", "-f", "Dockerfile", "."]
    assert cwd == tmp_path / "coq" / "rocq-prover.org" / ("c" * 40)
    assert host.in_use_during_docker == [1]
    assert pool.in_use == 0
    assert console.find("ok build")


def test_no_pull(tmp_path: Path) -> None:
    host = FakeHost(dockerfile="docker/Dockerfile")
    executor, _, _ = _executor(tmp_path, host)

    executor.submit(BuildRequest(ref=_ref(), dockerfile="docker/Dockerfile", pull=False))

    assert host.docker_calls[0][0] == ["docker", "build", "-f", "docker/Dockerfile", "."]


def test_failure_carries_diagnostic_and_releases_pool(tmp_path: Path) -> None:
    failed = Err(ProcessError(("docker", "build"), 1, "", "step 3/7: RUN make\nexit code 2\n"))
    host = FakeHost(docker_result=failed)
    executor, pool, console = _executor(tmp_path, host)

    stream = executor.submit(BuildRequest(ref=_ref(), dockerfile="Dockerfile"))

    assert stream.state == Failure("step 3/7: RUN make\nexit code 2")
    assert pool.in_use == 0
    assert console.has_error()


def test_missing_dockerfile(tmp_path: Path) -> None:
    host = FakeHost(dockerfile="Other")
    executor, _, _ = _executor(tmp_path, host)

    stream = executor.submit(BuildRequest(ref=_ref(), dockerfile="Dockerfile"))

    assert isinstance(stream.state, Failure)
    assert "Dockerfile not found" in stream.state.message
    assert host.docker_calls == []


def test_fetch_failure(tmp_path: Path) -> None:
    host = FakeHost(git_fails=True)
    executor, pool, _ = _executor(tmp_path, host)

    stream = executor.submit(BuildRequest(ref=_ref(), dockerfile="Dockerfile"))

    assert isinstance(stream.state, Failure)
    assert stream.state.message.startswith("git fetch failed")
    assert pool.peak == 0


def test_key_follows_reference_and_commit(tmp_path: Path) -> None:
    a = BuildExecutor.key_for(BuildRequest(ref=_ref("1" * 40), dockerfile="Dockerfile"))
    b = BuildExecutor.key_for(BuildRequest(ref=_ref("2" * 40), dockerfile="Dockerfile"))
    c = BuildExecutor.key_for(BuildRequest(ref=_ref("1" * 40, name="other"), dockerfile="Dockerfile"))

    assert a.slot == b.slot
    assert a != b
    assert a.slot != c.slot
    assert a.target == "coq/rocq-prover.org:refs/heads/feature"


def test_unchanged_request_is_not_rebuilt(tmp_path: Path) -> None:
    host = FakeHost()
    executor, _, _ = _executor(tmp_path, host)
    request = BuildRequest(ref=_ref(), dockerfile="Dockerfile")

    first = executor.submit(request)
    second = executor.submit(request)

    assert first is second
    assert len(host.docker_calls) == 1


def test_same_commit_on_two_refs_builds_once(tmp_path: Path) -> None:
    host = FakeHost()
    executor, _, _ = _executor(tmp_path, host)
    pull = Reference(REPO, "pull", "12", "c" * 40)

    branch_stream = executor.submit(BuildRequest(ref=_ref(), dockerfile="Dockerfile"))
    pull_stream = executor.submit(BuildRequest(ref=pull, dockerfile="Dockerfile"))

    assert branch_stream is not pull_stream
    assert pull_stream.state == Success("built")
    assert len(host.docker_calls) == 1


def test_failed_image_is_retried_for_another_ref(tmp_path: Path) -> None:
    host = FakeHost(docker_result=Err(ProcessError(("docker",), 1, "", "flaky")))
    executor, _, _ = _executor(tmp_path, host)

    executor.submit(BuildRequest(ref=_ref(), dockerfile="Dockerfile"))
    host.docker_result = Ok("")
    stream = executor.submit(BuildRequest(ref=_ref(name="other"), dockerfile="Dockerfile"))

    assert stream.state == Success("built")
    assert len(host.docker_calls) == 2


def test_retain_forgets_images_of_dropped_commits(tmp_path: Path) -> None:
    host = FakeHost()
    executor, _, _ = _executor(tmp_path, host)
    executor.submit(BuildRequest(ref=_ref("1" * 40), dockerfile="Dockerfile"))
    executor.submit(BuildRequest(ref=_ref("2" * 40, name="other"), dockerfile="Dockerfile"))

    assert executor.retain({(REPO, "2" * 40)}) == 1
    # A branch coming back to the forgotten commit builds it again.
    executor.submit(BuildRequest(ref=_ref("1" * 40, name="third"), dockerfile="Dockerfile"))
    executor.submit(BuildRequest(ref=_ref("2" * 40, name="fourth"), dockerfile="Dockerfile"))

    assert len(host.docker_calls) == 3
