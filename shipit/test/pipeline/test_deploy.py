from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from shipit.core.config import Config
from shipit.core.repo import RepoId
from shipit.core.result import Err, Ok, Result
from shipit.git.checkout import CheckoutStore
from shipit.output.console import MockConsole
from shipit.pipeline.cache import ResultCache
from shipit.pipeline.deploy import DeployExecutor, compose_command, deploy_env, env_lines
from shipit.pipeline.model import CompanionHead, Failure, Reference, Success
from shipit.platform.process import ProcessError

REPO = RepoId("coq", "rocq-prover.org")
DOC = RepoId("coq", "doc")
CONFIG = Config.from_dict({"repo": {"owner": "coq", "name": "rocq-prover.org"}})
COMPANION = CompanionHead(DOC, "d" * 40, "DOC_PATH")


class FakeHost:
    def __init__(self, *, compose_result: Result[str, ProcessError] | None = None) -> None:
        self.compose_result: Result[str, ProcessError] = compose_result or Ok("")
        self.compose_calls: list[tuple[list[str], Path, Mapping[str, str] | None]] = []
        self.fetched: list[str] = []

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        del timeout
        if cmd[0] == "git":
            sub = cmd[3]
            if sub == "init":
                (cwd / ".git").mkdir()
            elif sub == "fetch":
                self.fetched.append(cmd[-1])
            elif sub == "checkout":
                (cwd / "compose.yml").write_text("services: {}\n", encoding="utf-8")
            elif sub == "rev-parse":
                return Ok(cwd.name)
            return Ok("")
        self.compose_calls.append((cmd, cwd, env))
        return self.compose_result


def _executor(tmp_path: Path, host: FakeHost) -> DeployExecutor:
    return DeployExecutor(
        cache=ResultCache(spawn=lambda fn: fn()),
        checkouts=CheckoutStore(tmp_path, runner=host),
        console=MockConsole(),
        runner=host,
    )


def _main(commit: str = "c" * 40) -> Reference:
    return Reference(REPO, "branch", "main", commit)


def test_deploy_env(tmp_path: Path) -> None:
    store = CheckoutStore(tmp_path)
    env = dict(deploy_env(_main(), CONFIG.production, COMPANION, store))
    assert env == {
        "DOC_PATH": str(tmp_path / "coq" / "doc" / ("d" * 40)),
        "GIT_COMMIT": "c" * 40,
        "LOCAL_PORT": "8000",
    }


def test_deploy_env_without_companion(tmp_path: Path) -> None:
    env = dict(deploy_env(_main(), CONFIG.staging, None, CheckoutStore(tmp_path)))
    assert set(env) == {"GIT_COMMIT", "LOCAL_PORT"}
    assert env["LOCAL_PORT"] == "8010"


def test_compose_command() -> None:
    assert compose_command("www_main", "compose.yml", pull=True) == [
        "docker", "compose", "--project-name", "www_main", "--file", "compose.yml",
        "up", "--detach", "--remove-orphans", "--pull", "always",
    ]  # fmt: skip
    assert "--pull" not in compose_command("www_main", "compose.yml", pull=False)


def test_env_lines() -> None:
    assert env_lines({"LOCAL_PORT": "8000", "GIT_COMMIT": "abc"}) == ["GIT_COMMIT=abc", "LOCAL_PORT=8000"]


def test_successful_deploy(tmp_path: Path) -> None:
    host = FakeHost()
    executor = _executor(tmp_path, host)
    request = executor.request_for(_main(), CONFIG.production, COMPANION, compose_file="compose.yml")

    stream = executor.submit(request)

    assert stream.state == Success("deployed")
    assert host.fetched == ["c" * 40, "d" * 40]
    cmd, cwd, env = host.compose_calls[0]
    assert cmd[:4] == ["docker", "compose", "--project-name", "www_main"]
    assert cwd == tmp_path / "coq" / "rocq-prover.org" / ("c" * 40)
    assert env is not None
    assert env["GIT_COMMIT"] == "c" * 40
    assert env["DOC_PATH"] == str(tmp_path / "coq" / "doc" / ("d" * 40))


def test_failed_deploy(tmp_path: Path) -> None:
    host = FakeHost(compose_result=Err(ProcessError(("docker",), 1, "", "port is already allocated")))
    executor = _executor(tmp_path, host)
    request = executor.request_for(_main(), CONFIG.production, None, compose_file="compose.yml")

    assert executor.submit(request).state == Failure("port is already allocated")


def test_missing_compose_file(tmp_path: Path) -> None:
    host = FakeHost()
    executor = _executor(tmp_path, host)
    request = executor.request_for(_main(), CONFIG.production, None, compose_file="prod.yml")

    state = executor.submit(request).state

    assert isinstance(state, Failure)
    assert "prod.yml not found" in state.message
    assert host.compose_calls == []


def test_key_is_per_slot_and_covers_companion(tmp_path: Path) -> None:
    executor = _executor(tmp_path, FakeHost())
    base = executor.request_for(_main(), CONFIG.production, COMPANION, compose_file="compose.yml")
    moved_doc = executor.request_for(
        _main(), CONFIG.production, CompanionHead(DOC, "e" * 40, "DOC_PATH"), compose_file="compose.yml"
    )
    staging = executor.request_for(_main(), CONFIG.staging, COMPANION, compose_file="compose.yml")

    assert DeployExecutor.key_for(base).target == "www_main"
    assert DeployExecutor.key_for(base).slot == DeployExecutor.key_for(moved_doc).slot
    assert DeployExecutor.key_for(base) != DeployExecutor.key_for(moved_doc)
    assert DeployExecutor.key_for(base).slot != DeployExecutor.key_for(staging).slot


def test_companion_move_redeploys(tmp_path: Path) -> None:
    host = FakeHost()
    executor = _executor(tmp_path, host)

    executor.submit(executor.request_for(_main(), CONFIG.production, COMPANION, compose_file="compose.yml"))
    executor.submit(executor.request_for(_main(), CONFIG.production, COMPANION, compose_file="compose.yml"))
    moved = CompanionHead(DOC, "e" * 40, "DOC_PATH")
    executor.submit(executor.request_for(_main(), CONFIG.production, moved, compose_file="compose.yml"))

    assert len(host.compose_calls) == 2


def test_in_use_tracks_last_successful_deploy_per_slot(tmp_path: Path) -> None:
    host = FakeHost()
    executor = _executor(tmp_path, host)
    assert executor.in_use() == set()

    executor.submit(executor.request_for(_main("1" * 40), CONFIG.production, COMPANION, compose_file="compose.yml"))
    executor.submit(executor.request_for(_main("2" * 40), CONFIG.production, COMPANION, compose_file="compose.yml"))
    host.compose_result = Err(ProcessError(("docker",), 1, "", "boom"))
    executor.submit(executor.request_for(_main("3" * 40), CONFIG.production, COMPANION, compose_file="compose.yml"))

    assert executor.in_use() == {(REPO, "2" * 40), (DOC, "d" * 40)}
