"""Tests for shipit.platform.process module."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from shipit.core.result import Err, Ok
from shipit.platform.process import ProcessError, run


class TestProcessError:
    def test_str_short_command(self) -> None:
        error = ProcessError(("git", "status"), 1, "", "fatal: not a git repository")
        assert str(error) == "git status failed (exit 1)"

    def test_str_long_command_truncated(self) -> None:
        error = ProcessError(("docker", "build", "--pull", "-f", "Dockerfile", "."), 1, "", "")
        assert str(error) == "docker build --pull ... failed (exit 1)"

    def test_diagnostic_prefers_stderr(self) -> None:
        assert ProcessError(("x",), 1, "out", " err \n").diagnostic == "err"
        assert ProcessError(("x",), 1, "out\n", "").diagnostic == "out"
        assert ProcessError(("x",), 2, "", "").diagnostic == "x failed (exit 2)"

    def test_frozen(self) -> None:
        error = ProcessError(("cmd",), 1, "", "")
        with pytest.raises(AttributeError):
            error.returncode = 2  # type: ignore[misc]


class TestRun:
    def test_success_returns_stdout(self, tmp_path: Path) -> None:
        result = run([sys.executable, "-c", "print('hello')"], tmp_path)
        assert isinstance(result, Ok)
        assert "hello" in result.value

    def test_failure_returns_error(self, tmp_path: Path) -> None:
        script = "import sys; sys.stderr.write('broken'); sys.exit(3)"
        result = run([sys.executable, "-c", script], tmp_path)
        assert isinstance(result, Err)
        assert result.error.returncode == 3
        assert result.error.diagnostic == "broken"

    def test_env_is_layered(self, tmp_path: Path) -> None:
        script = "import os; print(os.environ['LOCAL_PORT'], 'PATH' in os.environ)"
        result = run([sys.executable, "-c", script], tmp_path, {"LOCAL_PORT": "8010"})
        assert isinstance(result, Ok)
        assert result.value.split() == ["8010", "True"]

    def test_missing_executable(self, tmp_path: Path) -> None:
        result = run(["definitely-not-a-real-binary-shipit"], tmp_path)
        assert isinstance(result, Err)
        assert result.error.returncode == -1

    def test_timeout(self, tmp_path: Path) -> None:
        result = run([sys.executable, "-c", "import time; time.sleep(5)"], tmp_path, timeout=0.2)
        assert isinstance(result, Err)
        assert result.error.returncode == -1
        assert "timed out" in result.error.stderr
